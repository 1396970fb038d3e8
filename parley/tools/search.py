"""
Web search and page extraction through the Parallel API.

``parallel_search`` and ``parallel_extract`` never raise for HTTP failures or
cancellation: they return a ``ToolErrorOutput`` with one of the codes
``invalid_key``, ``forbidden``, ``rate_limited`` or ``request_failed`` so the
model can read the failure and react.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, TypeVar

import httpx

from parley.tools.base import Tool
from parley.types import ErrorCode, ToolErrorOutput

logger = logging.getLogger(__name__)

PARALLEL_API_BASE = "https://api.parallel.ai"
PARALLEL_BETA_HEADER = "search-extract-2025-10-10"

_T = TypeVar("_T")

_STATUS_CODES: dict[int, str] = {
    401: ErrorCode.INVALID_KEY,
    403: ErrorCode.FORBIDDEN,
    429: ErrorCode.RATE_LIMITED,
}

_ERROR_MESSAGES: dict[str, str] = {
    ErrorCode.INVALID_KEY: "Your Parallel API key is invalid. Please check your API key in settings.",
    ErrorCode.FORBIDDEN: "Your Parallel API key does not have permission for this operation.",
    ErrorCode.RATE_LIMITED: "Search rate limit exceeded. Please try again later.",
    ErrorCode.REQUEST_FAILED: "Search request failed. Please try again.",
}


def status_error(status_code: int) -> ToolErrorOutput:
    code = _STATUS_CODES.get(status_code, ErrorCode.REQUEST_FAILED)
    return ToolErrorOutput(code=code, message=_ERROR_MESSAGES[code])


# ---------------------------------------------------------------------------
# Inputs and outputs
# ---------------------------------------------------------------------------


@dataclass
class SearchInput:
    objective: str
    search_queries: list[str] | None = None
    mode: str = "agentic"
    max_results: int = 10
    max_chars_per_result: int = 5000
    include_domains: list[str] | None = None
    exclude_domains: list[str] | None = None

    @classmethod
    def from_args(cls, args: dict) -> SearchInput:
        return cls(**{k: v for k, v in args.items() if k in cls.__dataclass_fields__})


@dataclass
class ExtractInput:
    objective: str
    urls: list[str]
    search_queries: list[str] | None = None

    @classmethod
    def from_args(cls, args: dict) -> ExtractInput:
        return cls(**{k: v for k, v in args.items() if k in cls.__dataclass_fields__})


@dataclass
class SearchSource:
    url: str
    title: str
    publish_date: str | None = None
    excerpts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.title,
            "publishDate": self.publish_date,
            "excerpts": self.excerpts,
        }


@dataclass
class SearchOutput:
    search_id: str
    sources: list[SearchSource]

    def to_dict(self) -> dict:
        return {"searchId": self.search_id, "sources": [s.to_dict() for s in self.sources]}


@dataclass
class ExtractSource:
    url: str
    title: str | None = None
    publish_date: str | None = None
    excerpts: list[str] = field(default_factory=list)
    full_content: str | None = None

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.title,
            "publishDate": self.publish_date,
            "excerpts": self.excerpts,
            "fullContent": self.full_content,
        }


@dataclass
class ExtractError:
    url: str
    error_type: str
    message: str

    def to_dict(self) -> dict:
        return {"url": self.url, "errorType": self.error_type, "message": self.message}


@dataclass
class ExtractOutput:
    extract_id: str
    sources: list[ExtractSource]
    errors: list[ExtractError] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "extractId": self.extract_id,
            "sources": [s.to_dict() for s in self.sources],
            "errors": [e.to_dict() for e in self.errors],
        }


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


class _Aborted(Exception):
    pass


async def _abortable(aw: Awaitable[_T], abort: asyncio.Event | None) -> _T:
    """Await *aw* unless *abort* is set first, in which case raise ``_Aborted``."""
    if abort is None:
        return await aw
    request = asyncio.ensure_future(aw)
    if abort.is_set():
        request.cancel()
        raise _Aborted()
    waiter = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait(
            {request, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        request.cancel()
        raise
    finally:
        waiter.cancel()
    if request in done:
        return request.result()
    request.cancel()
    raise _Aborted()


def _headers(api_key: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "x-api-key": api_key,
        "parallel-beta": PARALLEL_BETA_HEADER,
    }


def _source_policy(
    include_domains: list[str] | None, exclude_domains: list[str] | None
) -> dict | None:
    if not include_domains and not exclude_domains:
        return None
    policy: dict[str, list[str]] = {}
    if include_domains:
        policy["include_domains"] = include_domains
    if exclude_domains:
        policy["exclude_domains"] = exclude_domains
    return policy


async def _post(
    url: str,
    api_key: str,
    body: dict,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None,
) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        response = await client.post(url, json=body, headers=_headers(api_key))
        await response.aread()
        return response


async def parallel_search(
    api_key: str,
    search: SearchInput,
    abort: asyncio.Event | None = None,
    *,
    base_url: str = PARALLEL_API_BASE,
    timeout: float = 60.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SearchOutput | ToolErrorOutput:
    body: dict[str, Any] = {
        "objective": search.objective,
        "search_queries": search.search_queries,
        "mode": search.mode,
        "max_results": search.max_results,
        "excerpts": {"max_chars_per_result": search.max_chars_per_result},
        "source_policy": _source_policy(search.include_domains, search.exclude_domains),
    }
    try:
        response = await _abortable(
            _post(f"{base_url.rstrip('/')}/v1beta/search", api_key, body, timeout, transport),
            abort,
        )
    except _Aborted:
        return ToolErrorOutput(ErrorCode.REQUEST_FAILED, "Search was cancelled.")
    except httpx.HTTPError as exc:
        logger.error("Search request failed: %s", exc)
        return ToolErrorOutput(ErrorCode.REQUEST_FAILED, _ERROR_MESSAGES[ErrorCode.REQUEST_FAILED])

    if response.status_code >= 300:
        logger.warning("Search returned HTTP %d", response.status_code)
        return status_error(response.status_code)

    try:
        data = response.json()
        return SearchOutput(
            search_id=data["search_id"],
            sources=[
                SearchSource(
                    url=r["url"],
                    title=r.get("title") or r["url"],
                    publish_date=r.get("publish_date"),
                    excerpts=r.get("excerpts") or [],
                )
                for r in data.get("results") or []
            ],
        )
    except (ValueError, KeyError, TypeError) as exc:
        logger.error("Malformed search response: %s", exc)
        return ToolErrorOutput(ErrorCode.REQUEST_FAILED, _ERROR_MESSAGES[ErrorCode.REQUEST_FAILED])


async def parallel_extract(
    api_key: str,
    extract: ExtractInput,
    abort: asyncio.Event | None = None,
    *,
    base_url: str = PARALLEL_API_BASE,
    timeout: float = 60.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ExtractOutput | ToolErrorOutput:
    body = {
        "urls": extract.urls,
        "objective": extract.objective,
        "search_queries": extract.search_queries,
        "excerpts": True,
        "full_content": False,
    }
    failed = ToolErrorOutput(ErrorCode.REQUEST_FAILED, "Extract request failed. Please try again.")
    try:
        response = await _abortable(
            _post(f"{base_url.rstrip('/')}/v1beta/extract", api_key, body, timeout, transport),
            abort,
        )
    except _Aborted:
        return ToolErrorOutput(ErrorCode.REQUEST_FAILED, "Extract was cancelled.")
    except httpx.HTTPError as exc:
        logger.error("Extract request failed: %s", exc)
        return failed

    if response.status_code >= 300:
        logger.warning("Extract returned HTTP %d", response.status_code)
        return status_error(response.status_code)

    try:
        data = response.json()
        return ExtractOutput(
            extract_id=data["extract_id"],
            sources=[
                ExtractSource(
                    url=r["url"],
                    title=r.get("title"),
                    publish_date=r.get("publish_date"),
                    excerpts=r.get("excerpts") or [],
                    full_content=r.get("full_content"),
                )
                for r in data.get("results") or []
            ],
            errors=[
                ExtractError(
                    url=e["url"],
                    error_type=e.get("error_type", "unknown"),
                    message=e.get("content") or f"HTTP {e.get('http_status_code') or 'unknown'}",
                )
                for e in data.get("errors") or []
            ],
        )
    except (ValueError, KeyError, TypeError) as exc:
        logger.error("Malformed extract response: %s", exc)
        return failed


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

SEARCH_DESCRIPTION = """Search the web for information. Use this tool to find current information, facts, or research on any topic.

Guidelines:
- Keep the objective concise but descriptive (what you want to learn)
- Use search_queries for specific keyword searches (1-6 words each)
- Use "agentic" mode for conversational follow-ups, "one-shot" for comprehensive single queries
- Use include_domains to restrict to trusted sources (e.g., official docs, Wikipedia)
- Use exclude_domains to filter out unreliable or irrelevant sites"""

EXTRACT_DESCRIPTION = """Read and extract content from a webpage URL. Use this when:
- The user shares a link and asks about it
- You need detailed content from a specific URL
- Following up on search results to get full article content

Guidelines:
- Provide a clear objective describing what information you need
- Pass URLs from search results or user-provided links
- Use search_queries to focus extraction on relevant sections"""

_QUERIES_SCHEMA = {
    "type": "array",
    "items": {"type": "string", "maxLength": 200},
    "maxItems": 5,
}


class _ParallelTool(Tool):
    def __init__(
        self,
        api_key: str,
        base_url: str = PARALLEL_API_BASE,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport


class SearchTool(_ParallelTool):
    @property
    def name(self) -> str:
        return "search"

    @property
    def description(self) -> str:
        return SEARCH_DESCRIPTION

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "objective": {
                    "type": "string",
                    "maxLength": 500,
                    "description": "Natural-language description of the search goal. "
                    "Include source or freshness guidance here.",
                },
                "search_queries": {
                    **_QUERIES_SCHEMA,
                    "description": "Optional keyword queries (1-6 words each) to guide the search.",
                },
                "mode": {
                    "type": "string",
                    "enum": ["agentic", "one-shot"],
                    "default": "agentic",
                },
                "max_results": {"type": "integer", "minimum": 1, "maximum": 20, "default": 10},
                "max_chars_per_result": {
                    "type": "integer",
                    "minimum": 500,
                    "maximum": 30000,
                    "default": 5000,
                },
                "include_domains": {
                    "type": "array",
                    "items": {"type": "string"},
                    "maxItems": 10,
                    "description": "Restrict results to these domains only.",
                },
                "exclude_domains": {
                    "type": "array",
                    "items": {"type": "string"},
                    "maxItems": 10,
                    "description": "Exclude results from these domains.",
                },
            },
            "required": ["objective"],
        }

    async def execute(self, args, *, abort=None):
        return await parallel_search(
            self._api_key,
            SearchInput.from_args(args),
            abort,
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )


class ExtractTool(_ParallelTool):
    @property
    def name(self) -> str:
        return "extract"

    @property
    def description(self) -> str:
        return EXTRACT_DESCRIPTION

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "objective": {
                    "type": "string",
                    "maxLength": 500,
                    "description": "What information to extract from the URLs.",
                },
                "urls": {
                    "type": "array",
                    "items": {"type": "string", "pattern": "^https?://"},
                    "minItems": 1,
                    "maxItems": 10,
                },
                "search_queries": {
                    **_QUERIES_SCHEMA,
                    "description": "Optional keyword queries to focus extraction.",
                },
            },
            "required": ["objective", "urls"],
        }

    async def execute(self, args, *, abort=None):
        return await parallel_extract(
            self._api_key,
            ExtractInput.from_args(args),
            abort,
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )

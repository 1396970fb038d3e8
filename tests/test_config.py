"""Tests for layered configuration loading."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from parley import logging_setup
from parley.config import ParleyConfig, load_config
from parley.logging_setup import configure_logging

CONFIG_YAML = """
server:
  port: 9000
  cors_origins: ["http://localhost:3000"]
llm:
  default_model: openai/gpt-4o
  unknown_key: ignored
profiles:
  fast:
    llm:
      default_model: google/gemini-2.5-flash-lite
      max_steps: 3
"""


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    p = tmp_path / "parley.yaml"
    p.write_text(CONFIG_YAML, encoding="utf-8")
    return p


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("PARLEY_SERVER_PORT", "PARLEY_LLM_MAX_STEPS", "PARLEY_SERVER_CORS_ORIGINS"):
        monkeypatch.delenv(var, raising=False)


class TestLoadConfig:
    def test_defaults(self):
        cfg = load_config()
        assert cfg == ParleyConfig()
        assert cfg.server.user_header == "X-User-Id"
        assert cfg.llm.max_steps == 8

    def test_file_values(self, config_file):
        cfg = load_config(config_file)
        assert cfg.server.port == 9000
        assert cfg.server.cors_origins == ["http://localhost:3000"]
        assert cfg.llm.default_model == "openai/gpt-4o"
        assert cfg.llm.title_model == ParleyConfig().llm.title_model

    def test_missing_file_is_defaults(self, tmp_path):
        assert load_config(tmp_path / "nope.yaml") == ParleyConfig()

    def test_profile_overlay(self, config_file):
        cfg = load_config(config_file, profile="fast")
        assert cfg.llm.default_model == "google/gemini-2.5-flash-lite"
        assert cfg.llm.max_steps == 3
        assert cfg.server.port == 9000

    def test_unknown_profile(self, config_file):
        with pytest.raises(KeyError):
            load_config(config_file, profile="slow")

    def test_non_mapping_file(self, tmp_path):
        p = tmp_path / "bad.yaml"
        p.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_config(p)

    def test_env_beats_file(self, config_file, monkeypatch):
        monkeypatch.setenv("PARLEY_SERVER_PORT", "9100")
        monkeypatch.setenv("PARLEY_SERVER_CORS_ORIGINS", "http://a, http://b")
        cfg = load_config(config_file)
        assert cfg.server.port == 9100
        assert cfg.server.cors_origins == ["http://a", "http://b"]

    def test_cli_beats_env(self, config_file, monkeypatch):
        monkeypatch.setenv("PARLEY_LLM_MAX_STEPS", "5")
        cfg = load_config(config_file, cli_overrides={"llm.max_steps": 2})
        assert cfg.llm.max_steps == 2

    def test_unknown_override_key(self):
        with pytest.raises(KeyError):
            load_config(cli_overrides={"llm.nonsense": 1})


@pytest.fixture
def parley_logger(monkeypatch):
    logger = logging.getLogger("parley")
    saved = (list(logger.handlers), logger.level, logger.propagate)
    monkeypatch.setattr(logging_setup, "_configured", False)
    yield logger
    for handler in logger.handlers:
        if handler not in saved[0]:
            handler.close()
    logger.handlers = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


class TestLogging:
    def test_level_applied(self, tmp_path, parley_logger):
        log_file = tmp_path / "parley.log"
        configure_logging("DEBUG", str(log_file))
        logger = parley_logger
        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        configure_logging("WARNING")
        assert logger.level == logging.WARNING

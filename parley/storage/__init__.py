from parley.storage.store import ChatStore

__all__ = ["ChatStore"]

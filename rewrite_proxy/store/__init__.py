from .store import KeyValueStore, InMemoryStore, build_store

__all__ = ["KeyValueStore", "InMemoryStore", "build_store"]

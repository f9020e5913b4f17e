from abc import ABC, abstractmethod
from typing import Any, Callable, Iterator

from rewrite_proxy.vars import PROXY_STORE_BACKEND


class KeyValueStore(ABC):
    """
    Key-addressed record store behind the session table, cookie jars,
    authentication table and relay registry.

    Only an in-memory backend exists; every store lives for the lifetime of
    the process and is lost on restart.
    """

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def delete(self, key: str, default: Any = None) -> Any:
        pass

    @abstractmethod
    def keys(self) -> list[str]:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    def create(self, key: str, factory: Callable[[], Any]) -> Any:
        """Return the record under ``key``, creating it with ``factory`` if absent."""
        value = self.get(key)
        if value is None:
            value = factory()
            self.set(key, value)
        return value

    def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        value = fn(self.get(key))
        self.set(key, value)
        return value

    def values(self) -> list[Any]:
        return [self.get(k) for k in self.keys()]

    def items(self) -> list[tuple[str, Any]]:
        return [(k, self.get(k)) for k in self.keys()]

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self.keys())

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())


def build_store(name: str = PROXY_STORE_BACKEND) -> KeyValueStore:
    if name == "InMemoryStore":
        return InMemoryStore()
    cls = globals().get(name)
    if isinstance(cls, type) and issubclass(cls, KeyValueStore) and cls is not KeyValueStore:
        return cls()
    raise ValueError(f"Unknown store backend: {name}")


class InMemoryStore(KeyValueStore):
    def __init__(self):
        self._records: dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._records.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._records[key] = value

    def delete(self, key: str, default: Any = None) -> Any:
        return self._records.pop(key, default)

    def keys(self) -> list[str]:
        # snapshot, callers delete while iterating
        return list(self._records.keys())

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: str) -> bool:
        return key in self._records

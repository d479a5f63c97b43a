"""
Storage backends for configuration and cached network topology.
"""

import hashlib
import logging
from pathlib import Path
import typing

import orjson
import redis


logger = logging.getLogger(__name__)

__all__ = [
    "StorageBackend",
    "InMemoryStorage",
    "JSONFileStorage",
    "RedisStorage",
]


class StorageBackend:
    """Base storage backend interface"""

    def __init__(self, namespace: str):
        self.namespace = namespace

    def get_key(self, key: str, *args, **kwargs) -> str:
        """
        Build a namespaced storage key.

        Extra arguments are hashed into a short suffix, so differently parameterised
        entries (e.g. topology fetched from different locations) do not collide.
        """
        base_key = f"{self.namespace}:{key}"
        if args or kwargs:
            hash_input = str(args) + str(sorted(kwargs.items()))
            hash_suffix = hashlib.sha256(hash_input.encode()).hexdigest()[:8]
            return f"{base_key}:{hash_suffix}"
        return base_key

    def read(self, key: str) -> typing.Optional[dict]:
        raise NotImplementedError

    def update(self, key: str, data: dict, overwrite: bool = False) -> None:
        raise NotImplementedError

    def create(self, key: str, data: dict) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def write(self, key: str, data: dict) -> None:
        """Create the entry, or overwrite it if it already exists."""
        if self.read(key) is None:
            self.create(key, data)
        else:
            self.update(key, data, overwrite=True)


class InMemoryStorage(StorageBackend):
    """In-memory storage backend"""

    def __init__(
        self,
        namespace: str,
        *,
        defaults: typing.Optional[dict] = None,
    ):
        self._store: typing.Dict[str, dict] = dict(defaults or {})
        super().__init__(namespace)

    def read(self, key: str) -> typing.Optional[dict]:
        logger.debug(f"Reading entry for key: {key}")
        return self._store.get(key)

    def update(self, key: str, data: dict, overwrite: bool = False) -> None:
        logger.debug(f"Updating entry for key: {key}")
        if key not in self._store:
            raise KeyError(f"Entry with key '{key}' does not exist.")
        if overwrite:
            self._store[key] = data
            return
        self._store[key].update(data)

    def create(self, key: str, data: dict) -> None:
        logger.debug(f"Creating entry for key: {key}")
        if key in self._store:
            raise KeyError(f"Entry with key '{key}' already exists.")
        self._store[key] = data

    def delete(self, key: str) -> None:
        logger.debug(f"Deleting entry for key: {key}")
        if key in self._store:
            del self._store[key]
            return
        raise KeyError(f"Entry with key '{key}' does not exist.")


class JSONFileStorage(StorageBackend):
    """JSON file storage backend. One file per key."""

    def __init__(self, storage_dir: typing.Union[str, Path], namespace: str):
        super().__init__(namespace)
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(
            f"Initialized {self.__class__.__name__} with storage directory: {storage_dir}"
        )

    def _get_file_path(self, key: str) -> Path:
        # Colons from namespaced keys are not valid in Windows file names
        return self.storage_dir / f"{key.replace(':', '__')}.json"

    def _dump(self, file_path: Path, data: dict) -> None:
        with file_path.open("wb") as f:
            f.write(orjson.dumps(data, option=orjson.OPT_INDENT_2))

    def read(self, key: str) -> typing.Optional[dict]:
        logger.debug(f"Reading entry for key: {key}")
        file_path = self._get_file_path(key)
        if not file_path.exists():
            return None

        with file_path.open("rb") as f:
            return orjson.loads(f.read())

    def update(self, key: str, data: dict, overwrite: bool = False) -> None:
        logger.debug(f"Updating entry for key: {key}")
        file_path = self._get_file_path(key)
        if not file_path.exists():
            raise KeyError(f"Entry with key '{key}' does not exist.")

        if overwrite:
            self._dump(file_path, data)
            return
        existing_data = self.read(key) or {}
        existing_data.update(data)
        self._dump(file_path, existing_data)

    def create(self, key: str, data: dict) -> None:
        logger.debug(f"Creating entry for key: {key}")
        file_path = self._get_file_path(key)
        if file_path.exists():
            raise KeyError(f"Entry with key '{key}' already exists.")
        self._dump(file_path, data)

    def delete(self, key: str) -> None:
        logger.debug(f"Deleting entry for key: {key}")
        file_path = self._get_file_path(key)
        if not file_path.exists():
            raise KeyError(f"Entry with key '{key}' does not exist.")
        file_path.unlink()


class RedisStorage(StorageBackend):
    """Redis storage backend"""

    def __init__(
        self,
        client: redis.Redis,
        namespace: str,
        ttl: typing.Optional[int] = None,
    ):
        """
        Initialize Redis storage with a Redis client.

        :param client: An instance of `redis.Redis`
        :param namespace: Key namespace.
        :param ttl: Optional expiry in seconds applied on every write. Useful when
            the storage is used as a topology cache.
        """
        super().__init__(namespace)
        self.client = client
        self.ttl = ttl
        logger.debug(f"Initialized {self.__class__.__name__} with Redis client")

    def _set(self, key: str, data: dict) -> None:
        self.client.set(key, orjson.dumps(data), ex=self.ttl)

    def read(self, key: str) -> typing.Optional[dict]:
        logger.debug(f"Reading entry for key: {key}")
        data = self.client.get(key)
        if data is None:
            return None
        return orjson.loads(data)

    def update(self, key: str, data: dict, overwrite: bool = False) -> None:
        logger.debug(f"Updating entry for key: {key}")
        if not self.client.exists(key):
            raise KeyError(f"Entry with key '{key}' does not exist.")
        if overwrite:
            self._set(key, data)
            return
        existing_data = self.read(key) or {}
        existing_data.update(data)
        self._set(key, existing_data)

    def create(self, key: str, data: dict) -> None:
        logger.debug(f"Creating entry for key: {key}")
        if self.client.exists(key):
            raise KeyError(f"Entry with key '{key}' already exists.")
        self._set(key, data)

    def delete(self, key: str) -> None:
        logger.debug(f"Deleting entry for key: {key}")
        if not self.client.exists(key):
            raise KeyError(f"Entry with key '{key}' does not exist.")
        self.client.delete(key)

from unittest.mock import MagicMock

import orjson
import pytest

from floodline.storages import InMemoryStorage, JSONFileStorage, RedisStorage


class TestKeys:
    def test_namespaced(self):
        assert InMemoryStorage("config").get_key("abc") == "config:abc"

    def test_arguments_are_hashed(self):
        storage = InMemoryStorage("topology")

        first = storage.get_key("topology", "pipes.geojson")
        second = storage.get_key("topology", "inlets.geojson")

        assert first.startswith("topology:topology:")
        assert first != second
        assert first == storage.get_key("topology", "pipes.geojson")


class TestInMemoryStorage:
    def test_crud(self):
        storage = InMemoryStorage("ns")

        storage.create("k", {"a": 1})
        storage.update("k", {"b": 2})
        assert storage.read("k") == {"a": 1, "b": 2}

        storage.update("k", {"c": 3}, overwrite=True)
        assert storage.read("k") == {"c": 3}

        storage.delete("k")
        assert storage.read("k") is None

    def test_errors(self):
        storage = InMemoryStorage("ns")
        storage.create("k", {})

        with pytest.raises(KeyError):
            storage.create("k", {})
        with pytest.raises(KeyError):
            storage.update("missing", {})
        with pytest.raises(KeyError):
            storage.delete("missing")

    def test_write_upserts(self):
        storage = InMemoryStorage("ns")

        storage.write("k", {"a": 1})
        storage.write("k", {"b": 2})

        assert storage.read("k") == {"b": 2}


class TestJSONFileStorage:
    def test_round_trip(self, tmp_path):
        storage = JSONFileStorage(tmp_path / "configs", namespace="config")
        key = storage.get_key("session")

        storage.create(key, {"version": "1.0"})
        storage.update(key, {"extra": True})

        assert storage.read(key) == {"version": "1.0", "extra": True}
        assert len(list((tmp_path / "configs").glob("*.json"))) == 1

        storage.delete(key)
        assert storage.read(key) is None

    def test_create_existing(self, tmp_path):
        storage = JSONFileStorage(tmp_path, namespace="config")
        storage.create("k", {})

        with pytest.raises(KeyError):
            storage.create("k", {})


class TestRedisStorage:
    def test_reads_and_writes_json_with_ttl(self):
        client = MagicMock()
        client.exists.return_value = False
        storage = RedisStorage(client, namespace="topology", ttl=60)

        storage.create("k", {"a": 1})

        client.set.assert_called_once_with("k", orjson.dumps({"a": 1}), ex=60)

        client.get.return_value = orjson.dumps({"a": 1})
        assert storage.read("k") == {"a": 1}

    def test_missing(self):
        client = MagicMock()
        client.get.return_value = None
        client.exists.return_value = False
        storage = RedisStorage(client, namespace="config")

        assert storage.read("k") is None
        with pytest.raises(KeyError):
            storage.update("k", {})
        with pytest.raises(KeyError):
            storage.delete("k")

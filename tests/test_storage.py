"""
Tests for the key-value store backends.
"""
import pytest

from overlay_assistant.exceptions import QuotaExceeded, StorageError, StorageWriteFailure
from overlay_assistant.storage import FileStore, MemoryStore, RedisStore


class FakeRedis:
    """Minimal async redis double."""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value

    async def delete(self, key):
        self.data.pop(key, None)


class TestMemoryStore:

    @pytest.mark.asyncio
    async def test_get_set_remove(self):
        store = MemoryStore()
        assert await store.get("k") is None
        await store.set("k", b"v")
        assert await store.get("k") == b"v"
        assert "k" in store
        await store.remove("k")
        await store.remove("k")
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_quota(self):
        """Test writes beyond the quota raise QuotaExceeded."""
        store = MemoryStore(quota_bytes=10)
        await store.set("a", b"12345")
        with pytest.raises(QuotaExceeded):
            await store.set("b", b"123456")
        # overwriting a key does not count its old value
        await store.set("a", b"123456789")

    @pytest.mark.asyncio
    async def test_failure_switches(self):
        store = MemoryStore()
        store.fail_reads = True
        with pytest.raises(StorageError):
            await store.get("k")
        store.fail_writes = True
        with pytest.raises(StorageWriteFailure):
            await store.set("k", b"v")


class TestFileStore:

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        store = FileStore(tmp_path / "data")
        await store.set("_encryption_salt", b"\x00\x01")
        assert await store.get("_encryption_salt") == b"\x00\x01"
        assert await FileStore(tmp_path / "data").get("_encryption_salt") == b"\x00\x01"
        await store.remove("_encryption_salt")
        assert await store.get("_encryption_salt") is None

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, tmp_path):
        store = FileStore(tmp_path)
        await store.set("k", b"v" * 100)
        await store.set("k", b"w" * 100)
        assert [p.name for p in tmp_path.iterdir()] == ["k.bin"]

    @pytest.mark.asyncio
    async def test_quota(self, tmp_path):
        store = FileStore(tmp_path, quota_bytes=8)
        await store.set("a", b"1234")
        with pytest.raises(QuotaExceeded):
            await store.set("b", b"123456")

    def test_invalid_key(self, tmp_path):
        store = FileStore(tmp_path)
        with pytest.raises(ValueError):
            store._path("../escape")


class TestRedisStore:

    @pytest.mark.asyncio
    async def test_namespaced_keys(self):
        redis = FakeRedis()
        store = RedisStore(redis, namespace="ns")
        await store.set("k", b"v")
        assert redis.data == {"ns:k": b"v"}
        assert await store.get("k") == b"v"
        await store.remove("k")
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_errors_translated(self):
        class Broken(FakeRedis):
            async def get(self, key):
                raise ConnectionError("down")

            async def set(self, key, value):
                raise ConnectionError("down")

        store = RedisStore(Broken())
        with pytest.raises(StorageError):
            await store.get("k")
        with pytest.raises(StorageWriteFailure):
            await store.set("k", b"v")

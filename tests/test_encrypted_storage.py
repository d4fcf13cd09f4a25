"""
Tests for EncryptedStorage.

Tests cover:
- Allow-listed fields encrypted on write, other fields untouched
- Transparent decryption on read
- Plaintext migration fallback
- Store failures propagate instead of returning empty defaults
"""
import orjson
import pytest

from overlay_assistant.exceptions import StorageError, StorageWriteFailure
from overlay_assistant.vault import EncryptedStorage


@pytest.fixture
def vault(store, cipher):
    """Create an EncryptedStorage over the shared store."""
    return EncryptedStorage(store, cipher)


def sample_document():
    return {
        "api_keys": {
            "openai": "sk-openai-123",
            "openrouter": "",
            "elevenlabs": "el-456",
        },
        "fast_model": "gpt-4o-mini",
        "blur_level": 3,
    }


class TestWrite:
    """Tests for encrypting writes."""

    @pytest.mark.asyncio
    async def test_secrets_encrypted_at_rest(self, store, vault):
        """Test allow-listed fields never reach the store in plaintext."""
        await vault.write("settings", sample_document())
        raw = await store.get("settings")

        assert b"sk-openai-123" not in raw
        assert b"el-456" not in raw
        stored = orjson.loads(raw)
        assert stored["fast_model"] == "gpt-4o-mini"
        assert stored["blur_level"] == 3

    @pytest.mark.asyncio
    async def test_empty_values_left_alone(self, store, vault):
        """Test empty secrets are not encrypted."""
        await vault.write("settings", sample_document())
        stored = orjson.loads(await store.get("settings"))
        assert stored["api_keys"]["openrouter"] == ""

    @pytest.mark.asyncio
    async def test_caller_document_not_mutated(self, vault):
        """Test write works on a copy."""
        document = sample_document()
        await vault.write("settings", document)
        assert document == sample_document()

    @pytest.mark.asyncio
    async def test_missing_section_is_fine(self, store, vault):
        """Test documents without the secret section are stored as is."""
        await vault.write("prefs", {"theme": "dark"})
        assert orjson.loads(await store.get("prefs")) == {"theme": "dark"}

    @pytest.mark.asyncio
    async def test_write_failure_propagates(self, store, vault):
        """Test a failing secret write is reported, not swallowed."""
        store.fail_writes = True
        with pytest.raises(StorageWriteFailure):
            await vault.write("settings", sample_document())


class TestRead:
    """Tests for decrypting reads."""

    @pytest.mark.asyncio
    async def test_round_trip(self, vault):
        """Test read returns what was written."""
        await vault.write("settings", sample_document())
        assert await vault.read("settings") == sample_document()

    @pytest.mark.asyncio
    async def test_absent_document(self, vault):
        """Test read returns None when nothing is stored."""
        assert await vault.read("missing") is None

    @pytest.mark.asyncio
    async def test_plaintext_migration(self, store, vault):
        """Test legacy plaintext fields pass through unchanged."""
        legacy = sample_document()
        await store.set("settings", orjson.dumps(legacy))

        document = await vault.read("settings")

        assert document["api_keys"]["openai"] == "sk-openai-123"
        assert vault.migrated_fields == 2

    @pytest.mark.asyncio
    async def test_partial_migration(self, store, cipher, vault):
        """Test a mix of encrypted and plaintext fields decrypts per field."""
        document = sample_document()
        document["api_keys"]["openai"] = cipher.encrypt("sk-encrypted")
        document["api_keys"]["elevenlabs"] = "sk-plaintext-abc123"
        await store.set("settings", orjson.dumps(document))

        result = await vault.read("settings")

        assert result["api_keys"]["openai"] == "sk-encrypted"
        assert result["api_keys"]["elevenlabs"] == "sk-plaintext-abc123"

    @pytest.mark.asyncio
    async def test_migrated_value_encrypted_on_next_write(self, store, vault):
        """Test read-then-write encrypts former plaintext."""
        await store.set("settings", orjson.dumps(sample_document()))
        document = await vault.read("settings")
        await vault.write("settings", document)

        assert b"sk-openai-123" not in await store.get("settings")
        assert (await vault.read("settings"))["api_keys"]["openai"] == "sk-openai-123"

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, store, vault):
        """Test a broken store is distinguishable from no data."""
        store.fail_reads = True
        with pytest.raises(StorageError):
            await vault.read("settings")

    @pytest.mark.asyncio
    async def test_corrupt_document(self, store, vault):
        """Test a non-JSON value raises StorageError."""
        await store.set("settings", b"\x00not json")
        with pytest.raises(StorageError):
            await vault.read("settings")

    @pytest.mark.asyncio
    async def test_custom_fields(self, store, cipher):
        """Test any dotted path can be allow-listed."""
        vault = EncryptedStorage(store, cipher, fields=("token",))
        await vault.write("doc", {"token": "t-1", "name": "n"})
        raw = orjson.loads(await store.get("doc"))
        assert raw["token"] != "t-1"
        assert raw["name"] == "n"
        assert await vault.read("doc") == {"token": "t-1", "name": "n"}

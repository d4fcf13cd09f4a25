"""
EncryptedStorage — transparent field-level encryption over a key-value store.

Provides a plain document API for settings that mix secrets and ordinary
values:
- ``read(key)`` — fetch a document and decrypt its allow-listed fields
- ``write(key, document)`` — encrypt allow-listed fields and persist
- ``remove(key)`` — delete a document

Migration from plaintext needs no version flag: a field that fails to
decrypt is a legacy plaintext value and is returned as is. The next
``write`` encrypts it.

Security Note:
    Never log field values. Only log document keys and field names.
"""
import copy
import logging
from collections.abc import Iterable, MutableMapping
from typing import Any, Optional

import orjson

from ..conf import ENCRYPTED_FIELDS
from ..exceptions import InvalidCiphertext, StorageError
from ..storage import KeyValueStore
from .crypto import SecretCipher

logger = logging.getLogger("overlay.vault")


def _locate(document: MutableMapping, path: str) -> tuple[Optional[MutableMapping], str]:
    """Return the mapping holding the last segment of a dotted path."""
    *parents, leaf = path.split(".")
    node: Any = document
    for part in parents:
        if not isinstance(node, MutableMapping):
            return None, leaf
        node = node.get(part)
    if not isinstance(node, MutableMapping):
        return None, leaf
    return node, leaf


class EncryptedStorage:
    """Document store that encrypts a fixed allow-list of fields.

    Fields are dotted paths into nested documents, e.g.
    ``api_keys.openai`` targets ``document["api_keys"]["openai"]``.
    Other fields are stored untouched.
    """

    def __init__(
        self,
        store: KeyValueStore,
        cipher: SecretCipher,
        fields: Iterable[str] = ENCRYPTED_FIELDS,
    ):
        self._store = store
        self._cipher = cipher
        self._fields = tuple(fields)
        # plaintext values passed through on read (diagnostic only)
        self.migrated_fields = 0

    @property
    def fields(self) -> tuple[str, ...]:
        return self._fields

    # ------------------------------------------------------------------
    # Field helpers
    # ------------------------------------------------------------------

    def _decrypt_fields(self, key: str, document: MutableMapping) -> None:
        for path in self._fields:
            holder, leaf = _locate(document, path)
            if holder is None:
                continue
            value = holder.get(leaf)
            if not isinstance(value, str) or not value:
                continue
            try:
                holder[leaf] = self._cipher.decrypt(value)
            except InvalidCiphertext:
                # still plaintext; encrypted on next write
                self.migrated_fields += 1
                logger.debug(
                    "Field %s of %s is not encrypted yet", path, key,
                )

    def _encrypt_fields(self, document: MutableMapping) -> None:
        for path in self._fields:
            holder, leaf = _locate(document, path)
            if holder is None:
                continue
            value = holder.get(leaf)
            if isinstance(value, str) and value:
                holder[leaf] = self._cipher.encrypt(value)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def read(self, key: str) -> Optional[dict]:
        """Fetch a document and decrypt its sensitive fields.

        Args:
            key: Document key in the underlying store.

        Returns:
            The decrypted document, or None if nothing is stored yet.

        Raises:
            StorageError: If the store is unavailable or the stored value is
                not a JSON document.
            NotInitialized: If the cipher is not initialized.
        """
        raw = await self._store.get(key)
        if raw is None:
            return None
        try:
            document = orjson.loads(raw)
        except orjson.JSONDecodeError as err:
            raise StorageError(f"document {key!r} is corrupt: {err}") from err
        if not isinstance(document, dict):
            raise StorageError(f"document {key!r} is not a mapping")
        self._decrypt_fields(key, document)
        return document

    async def write(self, key: str, document: MutableMapping) -> None:
        """Encrypt sensitive fields and persist the document.

        The caller's document is left untouched.

        Args:
            key: Document key in the underlying store.
            document: JSON-serializable mapping.

        Raises:
            StorageWriteFailure: If the store rejects the write.
            NotInitialized: If the cipher is not initialized.
        """
        payload = copy.deepcopy(dict(document))
        self._encrypt_fields(payload)
        await self._store.set(key, orjson.dumps(payload))
        logger.debug("Stored document %s", key)

    async def remove(self, key: str) -> None:
        """Delete a document."""
        await self._store.remove(key)

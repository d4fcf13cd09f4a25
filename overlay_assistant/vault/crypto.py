"""
Vault Crypto Core — Key derivation and encryption/decryption of short secrets.

Key derivation:
    PBKDF2-HMAC-SHA256(installation_id, salt, 100k rounds) → 32-byte key → AES-GCM
Ciphertext format:
    base64([nonce 12B][encrypted_payload + GCM tag 16B])

The salt is 16 random bytes persisted once per installation. Wiping it
permanently invalidates every existing ciphertext.

Security Note:
    Never log plaintext, ciphertext, the salt or the installation identifier.
    Nonces are random 96-bit; a fresh nonce is drawn for every encryption.
    Only the AEAD object is kept in memory; raw key bytes are discarded
    right after derivation.
"""
import os
import base64
import asyncio
import binascii
import logging
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..conf import SALT_STORAGE_KEY
from ..exceptions import InitializationError, InvalidCiphertext, NotInitialized
from ..storage import KeyValueStore

logger = logging.getLogger("overlay.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # GCM tag
SALT_SIZE = 16
KEY_LENGTH = 32  # AES-256
DEFAULT_ITERATIONS = 100_000


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(identifier: str, salt: bytes, iterations: int) -> AESGCM:
    """Stretch ``identifier`` into an AES-256-GCM cipher object.

    Args:
        identifier: Stable per-installation identifier (key material).
        salt: Persisted random salt.
        iterations: PBKDF2 round count.

    Returns:
        AESGCM instance bound to the derived key.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return AESGCM(kdf.derive(identifier.encode("utf-8")))


class SecretCipher:
    """Encrypts short strings with a key bound to this installation.

    ``initialize()`` must complete before ``encrypt``/``decrypt``; it is
    idempotent and concurrent callers share one derivation.
    """

    def __init__(
        self,
        store: KeyValueStore,
        installation_id: str,
        iterations: int = DEFAULT_ITERATIONS,
    ):
        if not installation_id:
            raise ValueError("installation_id cannot be empty")
        self._store = store
        self._identifier = installation_id
        self._iterations = iterations
        self._aead: Optional[AESGCM] = None
        self._init_task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<SecretCipher initialized={self.is_initialized}>"

    @property
    def is_initialized(self) -> bool:
        return self._aead is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Derive and cache the encryption key.

        Raises:
            InitializationError: If the salt cannot be loaded or persisted,
                or key derivation fails. No fallback key is ever used.
        """
        if self._aead is not None:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._do_init())
        task = self._init_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def _do_init(self) -> None:
        salt = await self._get_or_create_salt()
        try:
            aead = await asyncio.to_thread(
                derive_key, self._identifier, salt, self._iterations,
            )
        except Exception as err:
            raise InitializationError(f"key derivation failed: {err}") from err
        self._aead = aead
        logger.info("Secret cipher initialized (%d rounds)", self._iterations)

    async def _get_or_create_salt(self) -> bytes:
        try:
            stored = await self._store.get(SALT_STORAGE_KEY)
        except Exception as err:
            raise InitializationError(f"cannot load salt: {err}") from err
        if stored is not None:
            if len(stored) != SALT_SIZE:
                # regenerating would silently orphan every ciphertext
                raise InitializationError(
                    f"stored salt has {len(stored)} bytes, expected {SALT_SIZE}"
                )
            return bytes(stored)
        salt = os.urandom(SALT_SIZE)
        try:
            await self._store.set(SALT_STORAGE_KEY, salt)
        except Exception as err:
            raise InitializationError(f"cannot persist salt: {err}") from err
        logger.info("Generated new installation salt")
        return salt

    async def wipe(self) -> None:
        """Delete the salt and forget the key.

        Every ciphertext produced so far becomes permanently undecryptable.
        """
        await self._store.remove(SALT_STORAGE_KEY)
        self._aead = None
        logger.warning("Installation salt wiped; existing ciphertexts are void")

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def _cipher(self) -> AESGCM:
        if self._aead is None:
            raise NotInitialized(
                "SecretCipher not initialized. Await initialize() first."
            )
        return self._aead

    def encrypt(self, plaintext: str) -> str:
        """Encrypt ``plaintext`` to ``base64(nonce | ciphertext | tag)``.

        Empty strings are returned unchanged.

        Raises:
            NotInitialized: If called before ``initialize()`` completed.
        """
        cipher = self._cipher()
        if not plaintext:
            return plaintext
        nonce = os.urandom(NONCE_SIZE)
        ct = cipher.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ct).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a value produced by :meth:`encrypt`.

        Raises:
            NotInitialized: If called before ``initialize()`` completed.
            InvalidCiphertext: If the value is not a ciphertext for this key
                (the normal outcome for legacy plaintext values).
        """
        cipher = self._cipher()
        try:
            raw = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError, TypeError) as err:
            raise InvalidCiphertext("value is not base64") from err
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise InvalidCiphertext(
                f"ciphertext too short: {len(raw)} bytes "
                f"(minimum {NONCE_SIZE + TAG_SIZE})"
            )
        try:
            plaintext = cipher.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
        except InvalidTag as err:
            raise InvalidCiphertext("authentication tag mismatch") from err
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as err:
            raise InvalidCiphertext("decrypted value is not UTF-8") from err

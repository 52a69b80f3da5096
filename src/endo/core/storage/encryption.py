"""Passphrase-based sealing of the diary entry collection.

The whole serialized entry list is encrypted with AES-256-GCM under a key
derived from the user's passphrase (PBKDF2-HMAC-SHA256, fresh salt per
write). Without a passphrase, or without working crypto primitives, the
collection is wrapped in a ``plain`` bundle instead.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import os
from collections.abc import Mapping
from typing import Any

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from endo.core.storage.models import CipherBundle

logger = logging.getLogger(__name__)

KDF_ITERATIONS_WEAK = 120_000
KDF_ITERATIONS_STRONG = 310_000

IV_LENGTH = 12
SALT_LENGTH = 16
KEY_LENGTH = 32


class CryptoUnavailable(Exception):
    """Raised when the crypto primitives needed for sealing are missing."""


class CryptoCodec:
    """Encrypts and decrypts byte blobs behind a passphrase.

    Usage::

        codec = CryptoCodec()
        bundle = await codec.encrypt(b'[{"date": "2026-01-01"}]', "secret", 120_000)
        plain = await codec.decrypt(bundle, "secret")   # bytes, or None if locked
    """

    def derive_key_sync(self, passphrase: str, salt: bytes, iterations: int) -> bytes:
        """Derive a 256-bit key with PBKDF2-HMAC-SHA256.

        Raises:
            CryptoUnavailable: If the backend does not support the KDF.
        """
        try:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=KEY_LENGTH,
                salt=salt,
                iterations=iterations,
            )
            return kdf.derive(passphrase.encode("utf-8"))
        except UnsupportedAlgorithm as exc:
            raise CryptoUnavailable(f"PBKDF2-HMAC-SHA256 unavailable: {exc}") from exc

    async def derive_key(self, passphrase: str, salt: bytes, iterations: int) -> bytes:
        return await asyncio.to_thread(self.derive_key_sync, passphrase, salt, iterations)

    async def encrypt(
        self, plaintext: bytes, passphrase: str | None, iterations: int = KDF_ITERATIONS_WEAK
    ) -> CipherBundle:
        """Seal ``plaintext`` and return the bundle describing how.

        An empty passphrase yields a ``plain`` bundle carrying the text
        verbatim. So does a host without the needed primitives.
        """
        if not passphrase:
            return CipherBundle(mode="plain", data=plaintext.decode("utf-8"))
        try:
            return await asyncio.to_thread(self._seal, plaintext, passphrase, iterations)
        except CryptoUnavailable as exc:
            logger.warning("Crypto unavailable, storing plain bundle: %s", exc)
            return CipherBundle(mode="plain", data=plaintext.decode("utf-8"))

    def _seal(self, plaintext: bytes, passphrase: str, iterations: int) -> CipherBundle:
        iv = os.urandom(IV_LENGTH)
        salt = os.urandom(SALT_LENGTH)
        key = self.derive_key_sync(passphrase, salt, iterations)
        try:
            ciphertext = AESGCM(key).encrypt(iv, plaintext, None)
        except UnsupportedAlgorithm as exc:
            raise CryptoUnavailable(f"AES-GCM unavailable: {exc}") from exc
        return CipherBundle(
            mode="gcm",
            iv=list(iv),
            salt=list(salt),
            iterations=iterations,
            data=base64.b64encode(ciphertext).decode("ascii"),
        )

    async def decrypt(
        self, bundle: CipherBundle | Mapping[str, Any], passphrase: str | None
    ) -> bytes | None:
        """Open a bundle. Returns ``None`` when the data stays locked.

        Never raises for a wrong or missing passphrase, a tampered or
        malformed bundle, an unknown mode, or missing primitives.
        """
        try:
            if not isinstance(bundle, CipherBundle):
                bundle = CipherBundle.from_dict(bundle)
        except ValueError as exc:
            logger.warning("Malformed cipher bundle: %s", exc)
            return None

        if bundle.mode == "plain":
            try:
                return bundle.data.encode("utf-8")
            except UnicodeEncodeError as exc:
                logger.warning("Plain bundle is not valid text: %s", exc)
                return None
        if bundle.mode != "gcm":
            logger.warning("Unsupported cipher bundle mode: %r", bundle.mode)
            return None
        if not passphrase:
            logger.info("Encrypted bundle needs a passphrase")
            return None

        try:
            return await asyncio.to_thread(self._open, bundle, passphrase)
        except InvalidTag:
            logger.info("Decryption failed: wrong passphrase or tampered bundle")
        except CryptoUnavailable as exc:
            logger.warning("Cannot decrypt bundle: %s", exc)
        except (ValueError, TypeError) as exc:
            logger.warning("Cannot decrypt bundle: %s", exc)
        return None

    def _open(self, bundle: CipherBundle, passphrase: str) -> bytes:
        if not bundle.iv or not bundle.salt:
            raise ValueError("gcm bundle is missing iv or salt")
        iv = bytes(bundle.iv)
        salt = bytes(bundle.salt)
        iterations = bundle.iterations or KDF_ITERATIONS_WEAK
        key = self.derive_key_sync(passphrase, salt, iterations)
        try:
            ciphertext = base64.b64decode(bundle.data, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"bundle data is not base64: {exc}") from exc
        try:
            return AESGCM(key).decrypt(iv, ciphertext, None)
        except UnsupportedAlgorithm as exc:
            raise CryptoUnavailable(f"AES-GCM unavailable: {exc}") from exc

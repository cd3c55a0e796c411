"""
Authenticated encryption for secrets stored at rest.

Values are written as ``"enc:" + base64(nonce || ciphertext || tag)`` using AES-256-GCM.
A stored value without the ``enc:`` marker predates encryption; it is returned as-is and
handed to a MigrationPolicy so the caller decides whether the read re-encrypts it in place.
"""
import base64
import binascii
import hashlib
import logging
import os
from collections.abc import Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "enc:"
NONCE_SIZE = 12
TAG_SIZE = 16


class DecryptionError(Exception):
    """Raised when a ciphertext is malformed or fails authentication."""


class MigrationPolicy:
    """Decides what happens to a legacy plaintext value found during a read."""

    def migrate(self, cipher: "CredentialCipher", plaintext: str) -> None:
        raise NotImplementedError


class NoMigration(MigrationPolicy):
    def migrate(self, cipher: "CredentialCipher", plaintext: str) -> None:
        return None


class PersistMigration(MigrationPolicy):
    """
    Re-encrypts the legacy value and hands the ciphertext to ``write``.

    Migration is best-effort: a failing write is logged and the read still succeeds.
    """

    def __init__(self, write: Callable[[str], None], *, label: str = "secret") -> None:
        self.write = write
        self.label = label

    def migrate(self, cipher: "CredentialCipher", plaintext: str) -> None:
        try:
            self.write(cipher.encrypt(plaintext))
        except Exception:
            logger.exception("legacy_secret_migration_failed field=%s", self.label)
            return
        logger.info("legacy_secret_migrated field=%s", self.label)


NO_MIGRATION = NoMigration()


def is_encrypted(value: str | None) -> bool:
    return bool(value) and value.startswith(ENCRYPTED_PREFIX)


class CredentialCipher:
    def __init__(self, master_secret: str) -> None:
        if not master_secret:
            raise ValueError("master_secret is required")
        self._key = hashlib.sha256(master_secret.encode("utf-8")).digest()

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(self._key).encrypt(nonce, plaintext.encode("utf-8"), None)
        return ENCRYPTED_PREFIX + base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, value: str, migration: MigrationPolicy | None = None) -> str:
        if not value.startswith(ENCRYPTED_PREFIX):
            (migration or NO_MIGRATION).migrate(self, value)
            return value

        try:
            raw = base64.b64decode(value[len(ENCRYPTED_PREFIX):], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Encrypted secret is not valid base64") from exc
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Encrypted secret is truncated")

        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = AESGCM(self._key).decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise DecryptionError("Encrypted secret failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Encrypted secret is not valid UTF-8") from exc

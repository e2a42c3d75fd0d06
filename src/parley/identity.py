"""
Parley - Local identity provider.

Created by orpheus497

Reference IdentityProvider: an account identifier bound to an Ed25519
signing key. The key file is protected at rest with:
- Argon2id password-based key derivation (unique salt per file)
- AES-256-GCM authenticated encryption (unique nonce per write)
"""

import base64
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    NONCE_SIZE,
    SALT_SIZE,
)
from .errors import AuthenticationRejected, ErrorCode
from .models import AccountIdentity

logger = logging.getLogger(__name__)


class LocalIdentity:
    """Account identifier plus an Ed25519 signing key."""

    def __init__(self, account: AccountIdentity, private_key: Optional[ed25519.Ed25519PrivateKey] = None):
        self.account = account
        self.private_key = private_key or ed25519.Ed25519PrivateKey.generate()
        self.public_key = self.private_key.public_key()
        self.created_at = datetime.now(timezone.utc).isoformat()

    async def get_identifier(self) -> AccountIdentity:
        return self.account

    async def sign(self, payload: bytes) -> bytes:
        return self.private_key.sign(payload)

    def verify(self, payload: bytes, signature: bytes) -> bool:
        """Check a signature produced by this identity."""
        try:
            self.public_key.verify(signature, payload)
            return True
        except InvalidSignature:
            return False

    def get_public_key_bytes(self) -> bytes:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
        )

    @property
    def fingerprint(self) -> str:
        """SHA-256 of the public key, hex encoded."""
        digest = hashes.Hash(hashes.SHA256())
        digest.update(self.get_public_key_bytes())
        return digest.finalize().hex()

    def to_dict(self) -> Dict[str, Any]:
        private_bytes = self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return {
            "account": self.account,
            "private_key": base64.b64encode(private_bytes).decode("utf-8"),
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "LocalIdentity":
        private_key = ed25519.Ed25519PrivateKey.from_private_bytes(
            base64.b64decode(data["private_key"])
        )
        identity = LocalIdentity(data["account"], private_key)
        identity.created_at = data.get("created_at", identity.created_at)
        return identity


def _derive_key(password: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=32,
        type=Type.ID,
    )


def encrypt_identity(identity_data: Dict[str, Any], password: str) -> Dict[str, str]:
    """Encrypt identity data with a password-derived key."""
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(_derive_key(password, salt)).encrypt(
        nonce, json.dumps(identity_data).encode("utf-8"), None
    )
    return {
        "salt": base64.b64encode(salt).decode("utf-8"),
        "nonce": base64.b64encode(nonce).decode("utf-8"),
        "ciphertext": base64.b64encode(ciphertext).decode("utf-8"),
        "version": "1.0",
    }


def decrypt_identity(encrypted_data: Dict[str, str], password: str) -> Dict[str, Any]:
    """
    Decrypt identity data.

    Raises:
        AuthenticationRejected: If the password is wrong or the file is corrupted
    """
    try:
        salt = base64.b64decode(encrypted_data["salt"])
        nonce = base64.b64decode(encrypted_data["nonce"])
        ciphertext = base64.b64decode(encrypted_data["ciphertext"])
        plaintext = AESGCM(_derive_key(password, salt)).decrypt(nonce, ciphertext, None)
        return json.loads(plaintext.decode("utf-8"))
    except (InvalidTag, KeyError, ValueError) as e:
        raise AuthenticationRejected(
            ErrorCode.E303_IDENTITY_LOAD_FAILED,
            "Failed to decrypt identity. Incorrect password or corrupted file.",
            {"operation": "load_identity", "cause": type(e).__name__},
        ) from e


class IdentityStore:
    """Creates and loads the encrypted identity file."""

    def __init__(self, identity_file: Path):
        self.identity_file = Path(identity_file)

    def exists(self) -> bool:
        return self.identity_file.exists()

    def create(self, account: AccountIdentity, password: str) -> LocalIdentity:
        """
        Create a fresh identity and store it encrypted.

        Raises:
            AuthenticationRejected: If an identity file already exists
        """
        if self.exists():
            raise AuthenticationRejected(
                ErrorCode.E302_IDENTITY_ALREADY_EXISTS,
                f"Identity already exists: {self.identity_file}",
                {"operation": "create_identity"},
            )
        identity = LocalIdentity(account)
        self.save(identity, password)
        logger.info(f"Identity created for {account} (fingerprint {identity.fingerprint[:16]})")
        return identity

    def save(self, identity: LocalIdentity, password: str) -> None:
        self.identity_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = f"{self.identity_file}.tmp"
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(encrypt_identity(identity.to_dict(), password), f)
        os.replace(temp_file, self.identity_file)
        os.chmod(self.identity_file, 0o600)

    def load(self, password: str) -> LocalIdentity:
        """
        Load the identity.

        Raises:
            AuthenticationRejected: If the file is missing, unreadable or the password is wrong
        """
        if not self.exists():
            raise AuthenticationRejected(
                ErrorCode.E301_IDENTITY_NOT_FOUND,
                f"Identity file does not exist: {self.identity_file}",
                {"operation": "load_identity"},
            )
        try:
            with open(self.identity_file, encoding="utf-8") as f:
                encrypted = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise AuthenticationRejected(
                ErrorCode.E303_IDENTITY_LOAD_FAILED,
                f"Cannot read identity file: {e}",
                {"operation": "load_identity", "cause": str(e)},
            ) from e

        identity = LocalIdentity.from_dict(decrypt_identity(encrypted, password))
        logger.info(f"Identity loaded: {identity.account}")
        return identity

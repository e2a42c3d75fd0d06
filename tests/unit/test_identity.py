"""
Unit tests for parley.identity.

Created by orpheus497

Tests identity creation, encryption at rest and signing.
"""

import json

import pytest

from parley.errors import AuthenticationRejected, ErrorCode
from parley.identity import IdentityStore, LocalIdentity, decrypt_identity, encrypt_identity


@pytest.mark.asyncio
class TestLocalIdentity:
    """Test the signing identity."""

    async def test_identifier_and_signature(self):
        identity = LocalIdentity("@bot:example.org")

        signature = await identity.sign(b"payload")

        assert await identity.get_identifier() == "@bot:example.org"
        assert identity.verify(b"payload", signature) is True
        assert identity.verify(b"tampered", signature) is False

    async def test_round_trip_keeps_key(self):
        identity = LocalIdentity("@bot:example.org")
        restored = LocalIdentity.from_dict(identity.to_dict())
        assert restored.fingerprint == identity.fingerprint
        assert len(identity.fingerprint) == 64


class TestIdentityEncryption:
    """Test password protection of the identity file."""

    def test_wrong_password_rejected(self):
        encrypted = encrypt_identity({"account": "a"}, "correct")
        with pytest.raises(AuthenticationRejected) as exc_info:
            decrypt_identity(encrypted, "wrong")
        assert exc_info.value.code is ErrorCode.E303_IDENTITY_LOAD_FAILED

    def test_unique_salt_and_nonce(self):
        first = encrypt_identity({"account": "a"}, "pw")
        second = encrypt_identity({"account": "a"}, "pw")
        assert first["salt"] != second["salt"]
        assert first["nonce"] != second["nonce"]


class TestIdentityStore:
    """Test creating and loading identity files."""

    def test_create_and_load(self, temp_dir):
        identities = IdentityStore(temp_dir / "identity.json")
        created = identities.create("@bot:example.org", "secret")

        loaded = identities.load("secret")

        assert loaded.account == "@bot:example.org"
        assert loaded.fingerprint == created.fingerprint
        assert "private_key" not in json.loads((temp_dir / "identity.json").read_text())

    def test_create_twice_rejected(self, temp_dir):
        identities = IdentityStore(temp_dir / "identity.json")
        identities.create("@bot:example.org", "secret")
        with pytest.raises(AuthenticationRejected) as exc_info:
            identities.create("@bot:example.org", "secret")
        assert exc_info.value.code is ErrorCode.E302_IDENTITY_ALREADY_EXISTS

    def test_missing_file(self, temp_dir):
        with pytest.raises(AuthenticationRejected) as exc_info:
            IdentityStore(temp_dir / "none.json").load("secret")
        assert exc_info.value.code is ErrorCode.E301_IDENTITY_NOT_FOUND

    def test_corrupt_file(self, temp_dir):
        path = temp_dir / "identity.json"
        path.write_text("{broken")
        with pytest.raises(AuthenticationRejected):
            IdentityStore(path).load("secret")

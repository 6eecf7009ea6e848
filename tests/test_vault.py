"""Tests for the secret vault (AES-256-GCM at rest)."""

import base64

import pytest

from leaderboard.vault import ConfigurationError, SecretIntegrityError, SecretVault
from tests.conftest import TEST_KEY


def _flip(payload: str, part_index: int, byte_index: int) -> str:
    parts = payload.split(".")
    raw = bytearray(base64.b64decode(parts[part_index]))
    raw[byte_index] ^= 0x01
    parts[part_index] = base64.b64encode(bytes(raw)).decode("ascii")
    return ".".join(parts)


class TestRoundTrip:
    @pytest.mark.parametrize(
        "plaintext",
        ["rt-abc123", "", "ünïcödé refresh token", "x" * 4096],
    )
    def test_decrypt_inverts_encrypt(self, vault, plaintext):
        assert vault.decrypt(vault.encrypt(plaintext)) == plaintext

    def test_nonce_is_fresh_per_call(self, vault):
        first, second = vault.encrypt("same"), vault.encrypt("same")
        assert first != second
        assert first.split(".")[0] != second.split(".")[0]

    def test_opaque_form_is_nonce_tag_ciphertext(self, vault):
        nonce, tag, ciphertext = vault.encrypt("hello").split(".")
        assert len(base64.b64decode(nonce)) == 12
        assert len(base64.b64decode(tag)) == 16
        assert len(base64.b64decode(ciphertext)) == len("hello")


class TestIntegrity:
    def test_every_flipped_byte_fails_verification(self, vault):
        payload = vault.encrypt("refresh-token-value")
        for part_index, part in enumerate(payload.split(".")):
            for byte_index in range(len(base64.b64decode(part))):
                with pytest.raises(SecretIntegrityError):
                    vault.decrypt(_flip(payload, part_index, byte_index))

    def test_wrong_key_fails_verification(self, vault):
        other = SecretVault.from_base64(SecretVault.generate_key())
        with pytest.raises(SecretIntegrityError):
            other.decrypt(vault.encrypt("secret"))

    @pytest.mark.parametrize(
        "payload",
        [
            "",
            "onlyonepart",
            "a.b",
            "a.b.c.d",
            "!!!.AAAAAAAAAAAAAAAAAAAAAA==.AAAA",
            "..",
        ],
    )
    def test_malformed_encoding_raises(self, vault, payload):
        with pytest.raises(SecretIntegrityError):
            vault.decrypt(payload)

    def test_truncated_tag_raises(self, vault):
        nonce, tag, ciphertext = vault.encrypt("secret").split(".")
        short_tag = base64.b64encode(base64.b64decode(tag)[:8]).decode("ascii")
        with pytest.raises(SecretIntegrityError):
            vault.decrypt(f"{nonce}.{short_tag}.{ciphertext}")


class TestKeyConfiguration:
    def test_missing_key_is_fatal(self):
        with pytest.raises(ConfigurationError):
            SecretVault.from_base64("")

    def test_non_base64_key_is_fatal(self):
        with pytest.raises(ConfigurationError):
            SecretVault.from_base64("not base64 at all!")

    @pytest.mark.parametrize("length", [0, 16, 31, 33, 64])
    def test_wrong_length_key_is_fatal(self, length):
        with pytest.raises(ConfigurationError):
            SecretVault(bytes(length))

    def test_generated_key_is_accepted(self):
        vault = SecretVault.from_base64(SecretVault.generate_key())
        assert vault.decrypt(vault.encrypt("ok")) == "ok"

    def test_configured_test_key_is_32_bytes(self):
        assert len(base64.b64decode(TEST_KEY)) == 32

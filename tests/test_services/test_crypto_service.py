"""Tests for token encryption at rest."""

from __future__ import annotations

import pytest

from autobackup.exceptions import CredentialError
from autobackup.services.crypto_service import TokenCipher


class TestTokenCipher:
    def test_seal_open_roundtrip(self) -> None:
        cipher = TokenCipher("app-secret")
        ciphertext = cipher.seal("EwB4A8l6BAAU")
        assert ciphertext != "EwB4A8l6BAAU"
        assert cipher.open(ciphertext, "access_token") == "EwB4A8l6BAAU"

    def test_ciphertext_is_randomized(self) -> None:
        cipher = TokenCipher("key")
        assert cipher.seal("token") != cipher.seal("token")

    def test_same_secret_opens_across_instances(self) -> None:
        ciphertext = TokenCipher("app-secret").seal("token")
        assert TokenCipher("app-secret").open(ciphertext, "refresh_token") == "token"

    def test_wrong_secret_names_the_column(self) -> None:
        ciphertext = TokenCipher("correct-key").seal("token")
        with pytest.raises(CredentialError, match="cannot be decrypted") as exc_info:
            TokenCipher("wrong-key").open(ciphertext, "refresh_token")
        assert exc_info.value.details["column"] == "refresh_token"

    def test_garbage_raises_credential_error(self) -> None:
        with pytest.raises(CredentialError):
            TokenCipher("any-key").open("not-valid-ciphertext", "access_token")

    def test_empty_secret_is_rejected(self) -> None:
        with pytest.raises(CredentialError, match="SECRET_KEY"):
            TokenCipher("")

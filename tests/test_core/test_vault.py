"""Tests for the AES-GCM credential vault."""

import pytest

from dcabot.core.errors import DecryptionFailed
from dcabot.core.vault import CredentialVault, derive_key


class TestDeriveKey:
    def test_short_secret_padded_with_zeros(self):
        key = derive_key("abc")
        assert len(key) == 32
        assert key == b"abc" + b"0" * 29

    def test_long_secret_truncated(self):
        assert derive_key("x" * 50) == b"x" * 32


class TestCredentialVault:
    def test_round_trip(self, vault):
        blob = vault.encrypt("my-api-key")
        assert blob != "my-api-key"
        assert vault.decrypt(blob) == "my-api-key"

    def test_round_trip_unicode_and_empty(self, vault):
        assert vault.decrypt(vault.encrypt("ключ-🔑")) == "ключ-🔑"
        assert vault.decrypt(vault.encrypt("")) == ""

    def test_blob_format(self, vault):
        iv, tag, ciphertext = vault.encrypt("secret").split(":")
        assert len(iv) == 32
        assert len(tag) == 32
        assert len(ciphertext) == len("secret") * 2

    def test_random_iv_per_encryption(self, vault):
        assert vault.encrypt("same") != vault.encrypt("same")

    def test_tampered_tag_fails(self, vault):
        iv, tag, ciphertext = vault.encrypt("secret").split(":")
        flipped = ("0" if tag[0] != "0" else "1") + tag[1:]
        with pytest.raises(DecryptionFailed):
            vault.decrypt(f"{iv}:{flipped}:{ciphertext}")

    def test_tampered_ciphertext_fails(self, vault):
        iv, tag, ciphertext = vault.encrypt("secret").split(":")
        flipped = ("0" if ciphertext[0] != "0" else "1") + ciphertext[1:]
        with pytest.raises(DecryptionFailed):
            vault.decrypt(f"{iv}:{tag}:{flipped}")

    def test_wrong_secret_fails(self, vault):
        blob = vault.encrypt("secret")
        with pytest.raises(DecryptionFailed):
            CredentialVault("another-secret").decrypt(blob)

    @pytest.mark.parametrize("blob", ["", "abc", "a:b", "zz:yy:xx", "00:00:00"])
    def test_malformed_blob(self, vault, blob):
        with pytest.raises(DecryptionFailed):
            vault.decrypt(blob)

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            CredentialVault("")

    def test_is_encrypted(self, vault):
        assert CredentialVault.is_encrypted(vault.encrypt("k"))
        assert not CredentialVault.is_encrypted("plain-api-key")

    def test_mask(self):
        assert CredentialVault.mask("ABCDEFGHIJKL") == "ABCD…IJKL"
        assert CredentialVault.mask("short") == "*****"
        assert CredentialVault.mask("") == ""

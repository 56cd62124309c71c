"""TokenCipher tests (low PBKDF2 iteration count to keep them fast)."""

import os
import stat
import sys

import pytest

from contestpredictor.services.token_cipher import TokenCipher, TokenDecryptError


@pytest.fixture
def cipher(tmp_path, logger):
    return TokenCipher(logger=logger, salt_path=tmp_path / "salt", iterations=1_000)


def test_encrypt_produces_prefixed_value_that_decrypts(cipher):
    sealed = cipher.encrypt("refresh-token-value")

    assert TokenCipher.is_sealed(sealed)
    assert "refresh-token-value" not in sealed
    assert cipher.decrypt(sealed) == "refresh-token-value"


def test_each_encryption_uses_a_fresh_nonce(cipher):
    assert cipher.encrypt("same") != cipher.encrypt("same")


def test_salt_file_is_created_once(cipher, tmp_path):
    cipher.encrypt("x")
    salt = (tmp_path / "salt").read_bytes()
    assert len(salt) == 32

    cipher.encrypt("y")
    assert (tmp_path / "salt").read_bytes() == salt


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
def test_salt_file_is_owner_only(cipher, tmp_path):
    cipher.encrypt("x")
    mode = stat.S_IMODE(os.stat(tmp_path / "salt").st_mode)
    assert mode == 0o600


def test_tampered_value_is_rejected(cipher):
    sealed = cipher.encrypt("token")
    tampered = sealed[:-4] + ("AAAA" if not sealed.endswith("AAAA") else "BBBB")

    with pytest.raises(TokenDecryptError):
        cipher.decrypt(tampered)


def test_other_salt_cannot_decrypt(cipher, tmp_path, logger):
    sealed = cipher.encrypt("token")
    other = TokenCipher(logger=logger, salt_path=tmp_path / "other-salt", iterations=1_000)

    with pytest.raises(TokenDecryptError):
        other.decrypt(sealed)


@pytest.mark.parametrize("value", ["plain-token", "enc:v1:!!!not-base64!!!", "enc:v1:AAAA"])
def test_malformed_values_are_rejected(cipher, value):
    with pytest.raises(TokenDecryptError):
        cipher.decrypt(value)

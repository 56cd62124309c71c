"""
Session Token Cipher.

Encrypts remote id/refresh tokens before they are written to the
``sessions`` table, so a copied database file does not hand out live
credentials.

Security model
--------------
- The key is derived at runtime from machine identity (hostname + OS
  username) via PBKDF2-HMAC-SHA256 with a per-machine random salt.  The
  key is **never** persisted to disk.
- Each value is sealed with AES-256-GCM (confidentiality + integrity)
  under a fresh 12-byte nonce.
- Stored form: ``enc:v1:`` + base64(nonce || tag || ciphertext).

If the machine identity or the salt changes, previously stored tokens
fail to decrypt; the session store treats such rows as absent.
"""

from __future__ import annotations

import base64
import getpass
import os
import platform
import socket
import stat
import subprocess
import threading
from pathlib import Path
from typing import Optional

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2
from Crypto.Random import get_random_bytes

from contestpredictor.logger import StructuredLogger
from contestpredictor.services.base_service import BaseService


class TokenDecryptError(ValueError):
    """Raised when a stored token cannot be authenticated or decoded."""


class TokenCipher(BaseService):
    """AES-256-GCM sealing for short secrets.

    Parameters
    ----------
    logger:
        Structured logger.
    salt_path:
        Location of the per-machine 32-byte salt file.  Created with
        owner-only permissions on first use.
    iterations:
        PBKDF2 iteration count.
    """

    PREFIX: str = "enc:v1:"
    _KEY_LENGTH: int = 32  # 256 bits
    _SALT_LENGTH: int = 32
    _NONCE_LENGTH: int = 12
    _TAG_LENGTH: int = 16

    def __init__(
        self,
        logger: StructuredLogger,
        salt_path: Path,
        iterations: int = 600_000,
    ) -> None:
        super().__init__(logger)
        self._salt_path: Path = salt_path
        self._iterations: int = iterations
        self._key: Optional[bytes] = None
        self._key_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @classmethod
    def is_sealed(cls, value: str) -> bool:
        return value.startswith(cls.PREFIX)

    def encrypt(self, plaintext: str) -> str:
        """Seal *plaintext* and return the storable string.

        Raises
        ------
        OSError
            If the salt file cannot be created or read.
        """
        nonce: bytes = get_random_bytes(self._NONCE_LENGTH)
        cipher = AES.new(self._derive_key(), AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode("utf-8"))
        blob = base64.b64encode(nonce + tag + ciphertext).decode("ascii")
        return f"{self.PREFIX}{blob}"

    def decrypt(self, sealed: str) -> str:
        """Open a value produced by :meth:`encrypt`.

        Raises
        ------
        TokenDecryptError
            If *sealed* is not in the expected format or fails
            authentication (tampered data, other machine, new salt).
        """
        if not self.is_sealed(sealed):
            raise TokenDecryptError("Value is not an encrypted token.")
        try:
            raw: bytes = base64.b64decode(sealed[len(self.PREFIX):], validate=True)
        except ValueError as exc:
            raise TokenDecryptError("Encrypted token is not valid base64.") from exc

        header = self._NONCE_LENGTH + self._TAG_LENGTH
        if len(raw) < header:
            raise TokenDecryptError("Encrypted token is truncated.")

        nonce, tag, ciphertext = raw[:self._NONCE_LENGTH], raw[self._NONCE_LENGTH:header], raw[header:]
        try:
            cipher = AES.new(self._derive_key(), AES.MODE_GCM, nonce=nonce)
            plaintext: bytes = cipher.decrypt_and_verify(ciphertext, tag)
            return plaintext.decode("utf-8")
        except (ValueError, KeyError) as exc:
            raise TokenDecryptError(
                "Token authentication failed (corrupted data or machine identity changed)."
            ) from exc

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _derive_key(self) -> bytes:
        """Derive (once) the 256-bit AES key from machine identity.

        ``hostname:username`` binds the key to this machine and OS
        account; the real entropy is the per-installation random salt.
        The key is cached in memory for the life of the process.
        """
        with self._key_lock:
            if self._key is None:
                password: str = f"{socket.gethostname()}:{getpass.getuser()}"
                self._key = PBKDF2(
                    password=password,
                    salt=self._get_or_create_salt(),
                    dkLen=self._KEY_LENGTH,
                    count=self._iterations,
                    hmac_hash_module=SHA256,
                )
            return self._key

    def _get_or_create_salt(self) -> bytes:
        """Return the per-machine random salt, creating it on first run.

        Raises
        ------
        OSError
            If the salt file cannot be read or written.  Callers must
            refuse to store tokens rather than fall back to a weak salt.
        """
        if self._salt_path.exists():
            data: bytes = self._salt_path.read_bytes()
            if len(data) == self._SALT_LENGTH:
                return data
            self._logger.warning(
                "Salt file has unexpected length (%d); regenerating.", len(data),
            )

        salt: bytes = os.urandom(self._SALT_LENGTH)
        self._salt_path.parent.mkdir(parents=True, exist_ok=True)
        self._salt_path.write_bytes(salt)

        if platform.system() == "Windows":
            self._restrict_windows_acl(self._salt_path)
        else:
            self._salt_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600

        self._logger.info("Per-machine token salt created at %s.", self._salt_path)
        return salt

    def _restrict_windows_acl(self, file_path: Path) -> None:
        """Limit *file_path* to the current user with ``icacls``.

        Failures are logged; the salt stays usable without the ACL.
        """
        try:
            result = subprocess.run(
                [
                    "icacls",
                    str(file_path),
                    "/inheritance:r",
                    "/grant:r",
                    f"{getpass.getuser()}:F",
                ],
                capture_output=True,
                check=False,
                timeout=10,
            )
            if result.returncode != 0:
                self._logger.warning(
                    "icacls returned exit code %d for '%s': %s",
                    result.returncode,
                    file_path,
                    result.stderr.decode("utf-8", errors="replace").strip(),
                )
        except (OSError, subprocess.SubprocessError) as exc:
            self._logger.warning("Failed to set Windows ACLs on '%s': %s", file_path, exc)

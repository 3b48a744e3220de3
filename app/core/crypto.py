from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from cryptography.fernet import Fernet

from app.core.config.settings import get_settings


def _load_or_create_key(key_file: Path) -> bytes:
    # Account secrets and admin session cookies are encrypted with this key; losing it invalidates both.
    key_file.parent.mkdir(parents=True, exist_ok=True)
    if key_file.exists():
        return key_file.read_bytes().strip()
    key = Fernet.generate_key()
    key_file.write_bytes(key)
    key_file.chmod(0o600)
    return key


@lru_cache(maxsize=8)
def _cached_key(key_file: str) -> bytes:
    return _load_or_create_key(Path(key_file))


@lru_cache(maxsize=8)
def _get_fernet(key: bytes) -> Fernet:
    return Fernet(key)


class TokenEncryptor:
    def __init__(self, key: bytes | None = None, key_file: Path | None = None) -> None:
        resolved_file = key_file or get_settings().encryption_key_file
        resolved_key = key or _cached_key(str(resolved_file))
        self._fernet = _get_fernet(resolved_key)

    def encrypt(self, value: str) -> bytes:
        return self._fernet.encrypt(value.encode())

    def decrypt(self, encrypted: bytes) -> str:
        return self._fernet.decrypt(encrypted).decode()

    def encrypt_optional(self, value: str | None) -> bytes | None:
        if not value:
            return None
        return self.encrypt(value)

    def decrypt_optional(self, encrypted: bytes | None) -> str | None:
        if encrypted is None:
            return None
        return self.decrypt(encrypted)

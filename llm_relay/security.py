from __future__ import annotations

from typing import Iterable, Mapping

from cryptography.fernet import Fernet


ENCRYPTED_PREFIX = "fernet:"


class TokenCipher:
    def __init__(self, key: str) -> None:
        self._fernet = Fernet(key)

    def encrypt(self, token: str) -> str:
        return self._fernet.encrypt(token.encode("utf-8")).decode("utf-8")

    def decrypt(self, encrypted_token: str) -> str:
        return self._fernet.decrypt(encrypted_token.encode("utf-8")).decode("utf-8")


def resolve_credentials(
    names: Iterable[str],
    env_values: Mapping[str, str],
    cipher: TokenCipher | None = None,
) -> dict[str, str]:
    """Look up provider credentials, decrypting ``fernet:``-prefixed values."""
    result: dict[str, str] = {}
    for name in names:
        value = str(env_values.get(name, "")).strip()
        if not value:
            continue
        if value.startswith(ENCRYPTED_PREFIX):
            if cipher is None:
                raise ValueError(f"Credential {name} is encrypted but no encryption_key is configured")
            value = cipher.decrypt(value[len(ENCRYPTED_PREFIX):])
        result[name] = value
    return result

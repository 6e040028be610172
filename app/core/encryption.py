# app/core/encryption.py
#
# Versleuteling van gebruikers-secrets (OpenAI API keys) in de database.
# Fernet (AES + HMAC) met een sleutel afgeleid van ENCRYPTION_SECRET.
import base64
import re
from functools import lru_cache

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from app.core.settings import settings

_OPENAI_KEY_RE = re.compile(r"^sk-[A-Za-z0-9_-]{40,}$")


@lru_cache(maxsize=4)
def _fernet(secret: str) -> Fernet:
    kdf = Scrypt(salt=b"filament-intake", length=32, n=2**14, r=8, p=1)
    key = kdf.derive(secret.encode("utf-8"))
    return Fernet(base64.urlsafe_b64encode(key))


def encrypt_secret(value: str) -> str:
    return _fernet(settings.ENCRYPTION_SECRET).encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str) -> str:
    """Raises InvalidToken als de waarde niet (meer) met deze sleutel te openen is."""
    return _fernet(settings.ENCRYPTION_SECRET).decrypt(token.encode("ascii")).decode("utf-8")


def mask_api_key(api_key: str) -> str:
    if not api_key or len(api_key) < 12:
        return "****"
    return f"{api_key[:7]}...{api_key[-4:]}"


def is_valid_openai_key_format(api_key: str) -> bool:
    return bool(_OPENAI_KEY_RE.match(api_key or ""))

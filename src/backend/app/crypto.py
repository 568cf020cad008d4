"""At-rest encryption for stored Facebook access tokens."""
import os
import hashlib
from typing import Optional

from nacl import secret
from nacl.encoding import Base64Encoder
from nacl.exceptions import CryptoError

# Graph tokens are long; anything this short is garbage, not a raw token
MIN_RAW_TOKEN_LENGTH = 10


def _box() -> secret.SecretBox:
    key_str = os.getenv("TOKEN_ENCRYPTION_KEY") or os.getenv("SECRET_KEY", "dev_secret_key_change_me")
    return secret.SecretBox(hashlib.sha256(key_str.encode("utf-8")).digest())


def encrypt_token(plain: str) -> str:
    # nonce is generated by the box and prefixed to the ciphertext
    return _box().encrypt(plain.encode("utf-8"), encoder=Base64Encoder).decode("ascii")


def decrypt_token(enc_b64: str) -> Optional[str]:
    try:
        return _box().decrypt(enc_b64.encode("ascii"), encoder=Base64Encoder).decode("utf-8")
    except (CryptoError, ValueError, UnicodeError):
        return None


def token_or_raw(stored: Optional[str]) -> Optional[str]:
    """Decrypt a stored token; rows written before encryption hold the raw token."""
    if not stored:
        return None
    plain = decrypt_token(stored)
    if plain:
        return plain
    return stored if len(stored) > MIN_RAW_TOKEN_LENGTH else None

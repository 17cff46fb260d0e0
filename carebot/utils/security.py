import base64
import hashlib
import json
import secrets
from functools import lru_cache
from typing import Any, Dict

from cryptography.fernet import Fernet, InvalidToken

from carebot.config import get_settings


@lru_cache()
def _fernet() -> Fernet:
    # Any ENCRYPTION_KEY string works; Fernet needs exactly 32 url-safe base64 bytes
    secret = get_settings().ENCRYPTION_KEY.encode("utf-8")
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(secret).digest()))


def encrypt_payload(payload: Dict[str, Any]) -> str:
    return _fernet().encrypt(json.dumps(payload).encode("utf-8")).decode("ascii")


def decrypt_payload(token: str) -> Dict[str, Any]:
    try:
        return json.loads(_fernet().decrypt(token.encode("ascii")))
    except (InvalidToken, ValueError) as e:
        raise ValueError("Encrypted payload could not be decrypted") from e


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def generate_numeric_code(length: int) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))

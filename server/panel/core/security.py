from datetime import datetime, timedelta, timezone
from typing import Optional
import hashlib
import hmac

import jwt
from passlib.context import CryptContext


pwd_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain: str, hashed_or_plain: str, is_hashed: bool) -> bool:
    if not hashed_or_plain:
        return False
    if is_hashed:
        return pwd_ctx.verify(plain, hashed_or_plain)
    return hmac.compare_digest(plain.encode("utf-8"), hashed_or_plain.encode("utf-8"))


def create_access_token(subject: str, secret: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=8))
    to_encode = {"sub": subject, "exp": expire}
    return jwt.encode(to_encode, secret, algorithm="HS256")


def decode_token(token: str, secret: str) -> dict:
    return jwt.decode(token, secret, algorithms=["HS256"])


# --------- Agent push signatures ---------

def sign_bytes(payload: bytes, key: str) -> str:
    return hmac.new(key.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(signature_hex: str, payload: bytes, key: str) -> bool:
    # an unset PSK must never accept the empty-key signature
    if not key or not signature_hex:
        return False
    return hmac.compare_digest(sign_bytes(payload, key), signature_hex)

import logging
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from tenant_manager.config import settings
from tenant_manager.exceptions import InvalidTokenError, TokenExpiredError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

# bcrypt_sha256 pre-hashes, so passwords longer than bcrypt's 72 bytes still count in full
pwd_context = CryptContext(
    schemes=["bcrypt_sha256"],
    deprecated="auto",
    bcrypt_sha256__rounds=settings.bcrypt_rounds,
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """
    Sign a session token (header.payload.signature, HMAC-SHA256).

    `data` must carry a "sub" claim with the user id; "iat" and "exp" are added.
    """
    if "sub" not in data:
        raise ValueError("Missing 'sub' claim (user id) in token data.")

    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode = {**data, "sub": str(data["sub"]), "iat": now, "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def create_user_token(user, tenant_id: int | None = None, expires_delta: timedelta | None = None) -> str:
    claims = {"sub": user.id, "username": user.username, "email": user.email}
    if tenant_id is not None:
        claims["tenant_id"] = tenant_id
    return create_access_token(claims, expires_delta)


def decode_access_token(token: str) -> dict:
    """Verify signature and expiry and return the payload."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        logger.info("Token expired")
        raise TokenExpiredError()
    except JWTError as e:
        logger.warning(f"JWT decoding failed: {str(e)}")
        raise InvalidTokenError()

    if not payload.get("sub"):
        logger.warning("Token is missing 'sub' claim")
        raise InvalidTokenError("Token does not contain 'sub' field.")
    return payload


def token_user_id(payload: dict) -> int:
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise InvalidTokenError("Token subject is not a user id")

"""JWT token creation and decoding.

Identity is managed outside the ledger; it only reads the owner from the
bearer token.

Token claims:
  - sub:   owner (account) ID
  - type:  "access"
  - exp:   expiry timestamp
"""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from invoicer.config import settings

ALGORITHM = settings.jwt_algorithm


def create_access_token(
    owner_id: str,
    expires_delta: timedelta | None = None,
) -> str:
    """Issue an access token (tooling and tests; production tokens come from identity)."""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    payload = {
        "sub": owner_id,
        "type": "access",
        "exp": expire,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Returns empty dict on failure."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return {}

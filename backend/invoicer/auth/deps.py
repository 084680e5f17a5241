"""FastAPI dependencies for authentication.

Dependencies:
  get_current_owner  → decode JWT, return the owner id from its `sub` claim
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from invoicer.auth.jwt import decode_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


async def get_current_owner(token: str = Depends(oauth2_scheme)) -> str:
    payload = decode_token(token)
    owner_id: str | None = payload.get("sub")
    if not owner_id or payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return owner_id

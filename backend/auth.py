from datetime import datetime, timedelta
from typing import Optional
import jwt
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import os

# Tokens are issued by the identity provider; the ledger only verifies them
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "your-secret-key-change-in-production-2024")
ALGORITHM = "HS256"
TOKEN_TYPE = "access"

# Lifetime of tokens minted by create_access_token
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

security = HTTPBearer()


def create_access_token(user_id: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Mint a ledger token carrying {user_id, role}.
    Used by tooling and tests.
    """
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {"user_id": str(user_id), "role": role, "exp": expire, "type": TOKEN_TYPE}
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


def decode_access_token(token: str) -> dict:
    """Verify signature, expiry and token type; return the claims."""
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Access token has expired")
    except jwt.PyJWTError:
        raise _unauthorized("Could not validate credentials")

    if claims.get("type") != TOKEN_TYPE:
        raise _unauthorized("Invalid token type")
    return claims


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    Identity for the ledger: {"user_id", "role"}.
    Role validity is checked by permissions.PermissionChecker.
    """
    claims = decode_access_token(credentials.credentials)

    user_id = claims.get("user_id")
    if user_id is None:
        raise _unauthorized("Token carries no user_id")

    role = claims.get("role")
    return {"user_id": str(user_id), "role": role.strip().lower() if isinstance(role, str) else role}

from typing import Any, Callable, Dict

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from . import config

ROLE_ADMIN = "admin"
ROLE_APPROVER = "approver"
ROLE_REQUESTER = "requester"

security = HTTPBearer()


async def get_current_user_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    """
    Decode a JWT bearer token and extract the caller's identity.

    Parameters
    ----------
    credentials : HTTPAuthorizationCredentials
        Authorization header parsed by FastAPI's HTTPBearer.

    Returns
    -------
    Dict[str, Any]
        - 'username' : str, the ``sub`` claim; used as the actor on every write
        - 'role' : str, one of admin / approver / requester
        - 'user_id' : Optional[int]

    Raises
    ------
    HTTPException
        401 if the token is invalid or lacks ``sub``.
    """
    token = credentials.credentials

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        raise credentials_exception

    username = payload.get("sub")
    if username is None:
        raise credentials_exception

    role = payload.get("role")
    if role not in (ROLE_ADMIN, ROLE_APPROVER):
        role = ROLE_REQUESTER

    return {"username": username, "role": role, "user_id": payload.get("user_id")}


def require_roles(*allowed_roles: str) -> Callable:
    """
    Build a dependency that enforces a set of allowed roles.

    Returns
    -------
    Callable
        A FastAPI dependency returning the claims, or raising HTTP 403.
    """

    async def dependency(claims: Dict[str, Any] = Depends(get_current_user_claims)) -> Dict[str, Any]:
        if claims["role"] not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
            )
        return claims

    return dependency


reviewer_roles = require_roles(ROLE_ADMIN, ROLE_APPROVER)

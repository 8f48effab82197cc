import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.auth import jwt_handler

security = HTTPBearer()


def get_current_provider_code(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    token = credentials.credentials
    try:
        payload = jwt_handler.decode_access_token(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    provider_code = (payload.get("sub") or "").strip()
    if not provider_code:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")
    if payload.get("role") != jwt_handler.PROVIDER_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Provider access required")
    return provider_code


def require_provider(provider_code: str, current_provider_code: str) -> str:
    normalized = (provider_code or "").strip()
    if normalized != current_provider_code:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Providers can only manage their own availability.",
        )
    return normalized

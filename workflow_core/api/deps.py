"""
Authentication and system dependencies
"""

from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import WorkflowConfig
from ..system import WorkflowSystem, get_workflow_system


security = HTTPBearer(auto_error=False)


def get_system() -> WorkflowSystem:
    return get_workflow_system()


def _user_from_token(token: str, config: WorkflowConfig) -> str:
    try:
        payload = jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: WorkflowSystem = Depends(get_system)
) -> str:
    """Validates the bearer JWT and returns its ``sub`` claim"""
    config = system.config
    if not config.auth_enabled:
        return config.dev_user_id

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return _user_from_token(credentials.credentials, config)


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: WorkflowSystem = Depends(get_system)
) -> Optional[str]:
    """Like ``get_current_user`` but anonymous callers get None instead of a 401"""
    config = system.config
    if not config.auth_enabled:
        return config.dev_user_id
    if not credentials:
        return None
    return _user_from_token(credentials.credentials, config)

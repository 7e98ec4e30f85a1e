"""
Single-user JWT authentication.

Credentials come from the data root's config.yml; tokens are signed with the
secret in .jwt_secret (rotated on every config reload, including restores).
Auth is disabled while config.yml has no password.
"""
import hmac

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from keepsake.core.local_config import ConfigState, get_config_state
from keepsake.core.tokens import create_token, verify_token

router = APIRouter(prefix="/auth", tags=["auth"])

security = HTTPBearer(auto_error=False)


class LoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    username: str
    token: str


@router.post("/login", response_model=TokenResponse)
async def login(req: LoginRequest, config: ConfigState = Depends(get_config_state)):
    current = config.get()
    if current is None or not current.password:
        raise HTTPException(400, "Password login is not configured")
    user_ok = hmac.compare_digest(req.username.encode(), current.username.encode())
    password_ok = hmac.compare_digest(req.password.encode(), current.password.encode())
    if not (user_ok and password_ok):
        raise HTTPException(401, "Invalid username or password")
    return TokenResponse(
        username=current.username,
        token=create_token(current.username, config.get_jwt_secret()),
    )


@router.get("/verify")
async def verify(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    config: ConfigState = Depends(get_config_state),
):
    if not credentials:
        raise HTTPException(401, "No token provided")
    try:
        claims = verify_token(credentials.credentials, config.get_jwt_secret())
    except ValueError:
        raise HTTPException(401, "Invalid or expired token")
    return {"valid": True, "username": claims.get("sub")}

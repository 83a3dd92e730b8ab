from typing import Optional

from fastapi import Depends, Header, Request

from marketplace_checkout.sandbox.models import SandboxStore, UserDB
from marketplace_checkout.shared.utils import (
    AppException,
    Settings,
    UnauthorizedException,
    bearer_token,
    verify_token,
)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> SandboxStore:
    return request.app.state.store


def _user_from_token(request: Request, token: str) -> UserDB:
    payload = verify_token(token, request.app.state.settings)
    user = request.app.state.store.users.get(payload.get("sub"))
    if user is None:
        raise UnauthorizedException("Unknown user")
    request.state.user_id = user.id
    return user


async def get_current_user(request: Request, token: str = Depends(bearer_token)) -> UserDB:
    return _user_from_token(request, token)


async def get_optional_user(request: Request, authorization: Optional[str] = Header(None)) -> Optional[UserDB]:
    if not authorization:
        return None
    return _user_from_token(request, bearer_token(authorization))


def idempotency_key(key: Optional[str] = Header(None, alias="Idempotency-Key")) -> str:
    if not key or len(key) > 255:
        raise AppException(detail="Idempotency-Key header is required", code="BAD_REQUEST")
    return key

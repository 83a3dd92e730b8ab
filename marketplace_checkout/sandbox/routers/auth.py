import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from marketplace_checkout.engine.models import SavedAddress
from marketplace_checkout.sandbox.dependencies import get_current_user, get_optional_user, get_store
from marketplace_checkout.sandbox.models import SandboxStore, UserDB
from marketplace_checkout.sandbox.schemas import GuestClaim, Token, UserLogin, UserRegister, UserResponse
from marketplace_checkout.shared.security_config import is_valid_email, limiter, validate_password_strength
from marketplace_checkout.shared.utils import (
    AppException,
    ConflictException,
    SuccessResponse,
    UnauthorizedException,
    create_access_token,
    get_password_hash,
    verify_password,
)

logger = logging.getLogger("checkout-sandbox")

router = APIRouter(prefix="/auth", tags=["identity"])


def issue_token(request: Request, user: UserDB) -> Token:
    access_token = create_access_token(
        data={"sub": user.id, "role": user.role},
        config=request.app.state.settings,
    )
    return Token(access_token=access_token, user=UserResponse(**user.model_dump()))


@router.post("/guest", response_model=SuccessResponse[Token])
@limiter.limit("30/minute")
async def start_guest(request: Request, store: SandboxStore = Depends(get_store)):
    user = UserDB(role="guest")
    store.users[user.id] = user
    return SuccessResponse(data=issue_token(request, user), message="Guest session started")


@router.post("/guest/claim", response_model=SuccessResponse[Token])
async def claim_guest(
    claim: GuestClaim,
    request: Request,
    user: UserDB = Depends(get_current_user),
    store: SandboxStore = Depends(get_store),
):
    if user.role != "guest":
        raise AppException(detail="Only guest sessions can be claimed", code="BAD_REQUEST")
    if not is_valid_email(claim.email):
        raise AppException(status_code=422, detail="Invalid email address", code="VALIDATION")
    if store.find_user_by_email(claim.email):
        raise ConflictException("Email already registered, please log in", code="CONFLICT")

    user.email = claim.email
    logger.info("Guest session claimed", extra={"user_id": user.id})
    return SuccessResponse(data=issue_token(request, user), message="Guest details saved")


@router.post("/register", response_model=SuccessResponse[Token])
@limiter.limit("10/minute")
async def register(
    payload: UserRegister,
    request: Request,
    guest: Optional[UserDB] = Depends(get_optional_user),
    store: SandboxStore = Depends(get_store),
):
    if not is_valid_email(payload.email):
        raise AppException(status_code=422, detail="Invalid email address", code="VALIDATION")
    if not validate_password_strength(payload.password):
        raise AppException(status_code=422, detail="Password is too weak", code="VALIDATION")
    if store.find_user_by_email(payload.email):
        raise ConflictException("Email already registered", code="CONFLICT")

    user = UserDB(
        email=payload.email,
        password_hash=get_password_hash(payload.password),
        full_name=payload.full_name,
        role="customer",
    )
    store.users[user.id] = user

    # Guest checkout turning into an account keeps its cart
    if guest is not None and guest.role == "guest":
        store.move_cart(guest.id, user.id)
        logger.info("Guest cart moved to new account", extra={"user_id": user.id})

    return SuccessResponse(data=issue_token(request, user), message="User registered successfully")


@router.post("/login", response_model=SuccessResponse[Token])
@limiter.limit("5/minute")
async def login(credentials: UserLogin, request: Request, store: SandboxStore = Depends(get_store)):
    user = store.find_user_by_email(credentials.email.strip())
    if not user or not verify_password(credentials.password, user.password_hash):
        raise UnauthorizedException("Incorrect email or password")
    return SuccessResponse(data=issue_token(request, user))


@router.get("/verify", response_model=SuccessResponse[UserResponse])
async def verify(user: UserDB = Depends(get_current_user)):
    return SuccessResponse(data=UserResponse(**user.model_dump()), message="Token is valid")


@router.post("/addresses", response_model=SuccessResponse[UserResponse])
async def save_address(address: SavedAddress, user: UserDB = Depends(get_current_user)):
    if user.role == "guest":
        raise AppException(detail="Guests cannot save addresses", code="BAD_REQUEST")

    # The first saved address is the default until another one claims it
    if address.is_default or not user.addresses:
        user.addresses = [saved.model_copy(update={"is_default": False}) for saved in user.addresses]
        address = address.model_copy(update={"is_default": True})
    user.addresses.append(address)

    logger.info("Address saved", extra={"user_id": user.id})
    return SuccessResponse(data=UserResponse(**user.model_dump()), message="Address saved")

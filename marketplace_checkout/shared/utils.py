from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Generic, TypeVar, Any
from fastapi import HTTPException, status, Header
from passlib.context import CryptContext
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
from jose import JWTError, jwt
import uuid

# --- Configuration ---
class Settings(BaseSettings):
    SERVICE_NAME: str = "checkout-engine"
    LOG_LEVEL: str = "INFO"

    # Remote collaborators
    API_BASE_URL: str = "http://localhost:8000"
    PROCESSOR_BASE_URL: str = "http://localhost:8000/processor"
    HTTP_TIMEOUT: float = 10.0
    READ_RETRY_ATTEMPTS: int = 3

    # Pricing
    CURRENCY: str = "usd"
    TAX_RATE: Decimal = Decimal("0.08")
    FREE_SHIPPING_THRESHOLD: Optional[Decimal] = None
    FLAT_SHIPPING_FEE: Decimal = Decimal("0.00")

    # "queue" waits behind the in-flight cart mutation, "reject" raises Busy
    CART_MUTATION_POLICY: str = "queue"

    # Sandbox backend
    SECRET_KEY: str = "secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    RATE_LIMIT_ENABLED: bool = True
    DELIVERY_ESTIMATE_DAYS: int = 5

    model_config = SettingsConfigDict(env_file=".env", env_prefix="CHECKOUT_", extra="ignore")

settings = Settings()

# --- Authentication ---
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None,
    config: Optional[Settings] = None,
) -> str:
    config = config or settings
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)

    # Add JTI
    if "jti" not in to_encode:
        to_encode.update({"jti": str(uuid.uuid4())})

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)

def verify_token(token: str, config: Optional[Settings] = None) -> dict:
    config = config or settings
    try:
        return jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        raise UnauthorizedException("Could not validate credentials")

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: Optional[str] = None
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        code: str = "BAD_REQUEST",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.code = code

class NotFoundException(AppException):
    def __init__(self, detail: str = "Resource not found", code: str = "NOT_FOUND"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail, code=code)

class UnauthorizedException(AppException):
    def __init__(self, detail: str = "Unauthorized"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            code="UNAUTHENTICATED",
            headers={"WWW-Authenticate": "Bearer"}
        )

class ConflictException(AppException):
    def __init__(self, detail: str, code: str):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail, code=code)

# --- Dependencies ---
def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    if not authorization:
        raise UnauthorizedException(detail="Missing Authorization header")
    scheme, _, param = authorization.partition(" ")
    if scheme.lower() != "bearer" or not param:
        raise UnauthorizedException(detail="Invalid authentication credentials")
    return param

from fastapi import Request, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import re
import html

# --- Rate Limiting ---
limiter = Limiter(key_func=get_remote_address)

def setup_rate_limiting(app: FastAPI, enabled: bool = True):
    limiter.enabled = enabled
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Card data must never be cached by intermediaries
        response.headers["Cache-Control"] = "no-store"

        return response

# --- Input Sanitization ---
def sanitize_input(text: str) -> str:
    """
    Sanitize input string:
    - HTML escape
    - Strip whitespace
    """
    if not isinstance(text, str):
        return text

    clean_text = text.strip()
    clean_text = html.escape(clean_text)

    return clean_text

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

def is_valid_email(email: str) -> bool:
    return bool(email) and bool(EMAIL_PATTERN.match(email.strip()))

def validate_password_strength(password: str) -> bool:
    """
    Validate password strength:
    - Min 8 chars
    - At least one uppercase
    - At least one lowercase
    - At least one digit
    """
    if len(password) < 8:
        return False
    if not re.search(r"[A-Z]", password):
        return False
    if not re.search(r"[a-z]", password):
        return False
    if not re.search(r"\d", password):
        return False
    return True

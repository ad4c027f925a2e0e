from fastapi import Request, FastAPI
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import html
import logging
import re

from shared.utils import settings

logger = logging.getLogger("security")

# --- Rate Limiting ---
REGISTER_RATE = "10/minute"
LOGIN_RATE = "5/minute"
REFRESH_RATE = "20/minute"
PASSWORD_RESET_RATE = "5/minute"
CATALOG_READ_RATE = "60/minute"
COUPON_CHECK_RATE = "30/minute"


def client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For when running behind a proxy, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(key_func=client_ip, enabled=settings.RATE_LIMIT_ENABLED)


async def rate_limit_exceeded(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"Rate limit exceeded on {request.url.path}", extra={"path": request.url.path})
    return JSONResponse(status_code=429, content={"detail": f"Too many requests: {exc.detail}"})


def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded)

# --- Security Headers Middleware ---
SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    # Product images are served from external CDNs
    "Content-Security-Policy": "default-src 'self'; img-src 'self' data: https:; object-src 'none'; frame-ancestors 'none';",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

# --- Input Sanitization ---
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_input(text: str) -> str:
    """
    Sanitize free text coming from shoppers (names, addresses, notes, reviews):
    - Drop control characters
    - Strip whitespace
    - HTML escape
    """
    if not isinstance(text, str):
        return text
    return html.escape(CONTROL_CHARS.sub("", text).strip())


def normalize_code(code: str) -> str:
    """Coupon codes are case-insensitive and stored upper-cased."""
    return (code or "").strip().upper()


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").strip().lower())
    return slug.strip("-")


PASSWORD_RULES = (r"[A-Z]", r"[a-z]", r"\d")


def validate_password_strength(password: str) -> bool:
    # Minimum 8 chars, then every PASSWORD_RULES pattern
    if len(password) < 8:
        return False
    return all(re.search(rule, password) for rule in PASSWORD_RULES)

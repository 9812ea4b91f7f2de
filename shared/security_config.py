from typing import Optional
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
import html
import re

# --- Security Headers Middleware ---
SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none';",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
}

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

# --- Input Sanitization ---
_WHITESPACE = re.compile(r"\s+")

def sanitize_input(text: Optional[str]) -> Optional[str]:
    """
    Sanitize a free-text field:
    - Strip and collapse whitespace
    - HTML escape
    """
    if not isinstance(text, str):
        return text
    return html.escape(_WHITESPACE.sub(" ", text.strip()))

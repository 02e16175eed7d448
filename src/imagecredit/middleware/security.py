from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

# JSON-only API: nothing is ever rendered, framed or scripted
_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}

_HSTS_VALUE = "max-age=31536000; includeSubDomains"

# Balances, tokens and payment results must never sit in a shared cache
_NO_STORE_PREFIX = "/api/"


def _apply_security_headers(response: Response, is_https: bool, path: str) -> None:
    """Set standard security headers on a response."""
    for name, value in _SECURITY_HEADERS.items():
        response.headers[name] = value
    if is_https:
        response.headers["Strict-Transport-Security"] = _HSTS_VALUE
    if path.startswith(_NO_STORE_PREFIX):
        response.headers["Cache-Control"] = "no-store"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds security headers to every HTTP response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        _apply_security_headers(
            response,
            is_https=request.url.scheme == "https",
            path=request.url.path,
        )
        return response

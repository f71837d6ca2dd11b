"""
Security headers middleware.

The service only serves JSON, so every response gets a locked-down
Content-Security-Policy plus the usual sniffing / framing / transport
headers.  API responses are never cached.

Usage:
    from app.middleware.security_headers import init_security_headers
    init_security_headers(app)
"""

_HEADERS = {
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "no-referrer",
}


def init_security_headers(app):
    """Register after_request handler that injects security headers."""

    @app.after_request
    def _add_security_headers(response):
        for name, value in _HEADERS.items():
            response.headers.setdefault(name, value)
        if response.mimetype == "application/json":
            response.headers.setdefault("Cache-Control", "no-store")
        response.headers.pop("Server", None)
        return response

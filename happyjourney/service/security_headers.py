from __future__ import annotations

from typing import Dict, Iterable, List

from starlette.responses import Response

from happyjourney.config import Settings

STATIC_HEADERS: Dict[str, str] = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "geolocation=(), microphone=()",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains; preload",
}

CDN_SCRIPT_ORIGINS = ["https://cdn.jsdelivr.net"]


def _join(*parts: Iterable[str]) -> str:
    seen: List[str] = []
    for group in parts:
        for item in group:
            if item and item not in seen:
                seen.append(item)
    return " ".join(seen)


def build_csp(settings: Settings) -> str:
    media = list(settings.csp_media_origins)
    payment = list(settings.csp_payment_origins)
    directives = [
        ("default-src", _join(["'self'"])),
        ("img-src", _join(["'self'", "data:", "https:", "blob:"], media)),
        (
            "script-src",
            _join(["'self'", "'unsafe-inline'"], media, CDN_SCRIPT_ORIGINS, payment),
        ),
        ("style-src", _join(["'self'", "'unsafe-inline'", "https:"])),
        ("font-src", _join(["'self'", "data:", "https:"])),
        ("connect-src", _join(["'self'"], media, payment)),
        ("frame-src", _join(["'self'"], media, payment)),
        ("frame-ancestors", "'none'"),
    ]
    rendered = [f"{name} {value}" for name, value in directives]
    rendered.append("upgrade-insecure-requests")
    return "; ".join(rendered) + ";"


def compose_security_headers(settings: Settings) -> Dict[str, str]:
    headers = dict(STATIC_HEADERS)
    headers["Content-Security-Policy"] = build_csp(settings)
    return headers


def apply_security_headers(response: Response, headers: Dict[str, str]) -> Response:
    for name, value in headers.items():
        response.headers[name] = value
    return response

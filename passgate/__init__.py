"""
PassGate
========

An async-first passkey (WebAuthn) ceremony engine for Python, with first-class FastAPI support.

PassGate lets users of an existing account system sign in with public-key credentials instead of passwords. It owns the security-critical part of a passkey deployment: issuing single-use challenges bound to the requesting browser, verifying registration and authentication responses, picking the right Relying Party per serving domain, and keeping credential state consistent under concurrent requests.

- FastAPI router with begin/finish endpoints for registration and login plus self-service credential management.
- Server-side challenges, consumed exactly once whatever the outcome; the session cookie only carries opaque references.
- Per-host Relying Party resolution with an allow-list, per-domain overrides, multi-tenant titles and an explicitly invalidated cache.
- Clone detection through signature-counter checks with a configurable disable policy.
- Async SQLAlchemy models with SQLite and PostgreSQL support; uniqueness and counter updates are enforced by the database.

Attestation is accepted with the "none" policy: statements are never checked against a trust chain.
"""

__version__ = "0.1.0"
__description__ = "Passkey (WebAuthn) ceremony engine for FastAPI applications"

from fastapi import FastAPI

from .core.config import settings, init_settings


def init_app(app: FastAPI, include_router: bool = True):
    """
    Initializes PassGate on a FastAPI app: installs the signed session cookie
    middleware and the passkey router.

    :param app: The FastAPI application.
    :param include_router: Set to False to mount `passgate.routers.passkey_router` yourself.

    Expired challenges are swept whenever a new one is issued. Hosts with long idle
    periods can also call `passgate_service.purge_expired_challenges()` on a schedule.
    """
    from passgate.routers import passkey_router
    from starlette.middleware.sessions import SessionMiddleware

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SECRET_KEY.get_secret_value(),
        session_cookie=settings.SESSION_COOKIE_NAME,
        max_age=settings.SESSION_MAX_AGE_SECONDS,
        same_site=settings.SESSION_SAME_SITE,
        https_only=settings.SESSION_SECURE,
    )
    if include_router:
        app.include_router(passkey_router)


__all__ = [
    "settings",
    "init_settings",
    "init_app"
]

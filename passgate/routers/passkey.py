import logging
from typing import List, Optional, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from passgate.core.config import settings
from passgate.core.database import User
from passgate.core.encoding import encoding_utils
from passgate.core.exceptions import (
    CeremonyError, NoCredentialsRegistered, InsecureTransportError, RateLimitError, CredentialNotFound,
    OperationForbiddenError, Unauthenticated
)
from passgate.core.hooks import hook_manager
from passgate.core.relying_party import is_registrable_parent
from passgate.helpers import (
    ensure_secure_transport, back_url_from_request, credential_title, get_remote_address, get_request_host,
    is_development_host
)
from passgate.integrations import (
    passgate_service, identity_store, get_current_user, get_current_user_optional, get_ceremony_context,
    get_rp_resolver
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/passkeys", tags=["Passkeys"])


# --- Pydantic Models ---
class PasskeyResponse(BaseModel):
    id: str
    title: str
    created_at: float
    last_used_at: Optional[float] = None
    transports: List[str] = []


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def _screen(request: Request, ceremony: str, stage: str) -> Optional[JSONResponse]:
    """Transport check and registered guards, before any cryptographic work."""
    try:
        ensure_secure_transport(request)
        await hook_manager.run_guards(request, ceremony=ceremony, stage=stage)
    except InsecureTransportError as e:
        logger.warning(f"Refused {ceremony} {stage} over insecure transport: {e}")
        return _error(status.HTTP_400_BAD_REQUEST, "passkeys require a secure connection")
    except RateLimitError as e:
        logger.warning(f"Throttled {ceremony} {stage}: {e}")
        return _error(status.HTTP_429_TOO_MANY_REQUESTS, "too many requests")
    return None


def _decode_id(credential_id_b64: str) -> bytes:
    try:
        return encoding_utils.base64url_decode(credential_id_b64)
    except ValueError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Passkey not found.")


async def _read_payload(request: Request) -> Dict[str, Any]:
    # Structural validation happens in the verifier so a bad body still burns the challenge.
    try:
        payload = await request.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


@router.post("/login-begin", summary="Generate options for passkey login")
async def login_begin(request: Request):
    """
    Issues an authentication challenge. Fails with "no credentials registered"
    when the store holds no active passkey, without creating a challenge.
    """
    rejected = await _screen(request, "authentication", "begin")
    if rejected:
        return rejected
    ctx = await get_ceremony_context(request)
    try:
        ref, options = await passgate_service.passkeys.begin_authentication(ctx.rp, ctx.user_agent)
    except NoCredentialsRegistered:
        return _error(status.HTTP_400_BAD_REQUEST, "no credentials registered")
    identity_store.set_challenge_ref(request, identity_store.AUTHENTICATION_KEY, ref)
    back_url = back_url_from_request(request)
    if back_url:
        request.session[identity_store.BACK_URL_KEY] = back_url
    return options


@router.post("/login-finish", summary="Verify a passkey assertion and log the user in")
async def login_finish(request: Request):
    rejected = await _screen(request, "authentication", "finish")
    if rejected:
        return rejected
    payload = await _read_payload(request)
    ctx = await get_ceremony_context(request)
    ref = identity_store.pop_challenge_ref(request, identity_store.AUTHENTICATION_KEY)
    try:
        user, _ = await passgate_service.passkeys.finish_authentication(payload, ref, ctx)
    except CeremonyError:
        return _error(status.HTTP_401_UNAUTHORIZED, "authentication failed")
    redirect_url = request.session.pop(identity_store.BACK_URL_KEY, None) or settings.PASSKEY_LOGIN_REDIRECT
    identity_store.log_in(request, user)
    return {"success": True, "redirectURL": redirect_url}


@router.post("/register-begin", summary="Generate options for passkey registration")
async def register_begin(request: Request, user: Optional[User] = Depends(get_current_user_optional)):
    """
    Issues a registration challenge bound to the logged-in user. Registration
    adds a passkey to an existing account and is never a sign-up path.
    """
    rejected = await _screen(request, "registration", "begin")
    if rejected:
        return rejected
    ctx = await get_ceremony_context(request)
    try:
        ref, options = await passgate_service.passkeys.begin_registration(user, ctx.rp, ctx.user_agent)
    except Unauthenticated:
        return _error(status.HTTP_401_UNAUTHORIZED, "not authenticated")
    identity_store.set_challenge_ref(request, identity_store.REGISTRATION_KEY, ref)
    return options


@router.post("/register-finish", summary="Verify a registration response and store the passkey")
async def register_finish(request: Request, user: Optional[User] = Depends(get_current_user_optional)):
    rejected = await _screen(request, "registration", "finish")
    if rejected:
        return rejected
    payload = await _read_payload(request)
    ctx = await get_ceremony_context(request)
    ref = identity_store.pop_challenge_ref(request, identity_store.REGISTRATION_KEY)
    try:
        credential = await passgate_service.passkeys.finish_registration(user, payload, ref, ctx)
    except Unauthenticated:
        return _error(status.HTTP_401_UNAUTHORIZED, "not authenticated")
    except CeremonyError:
        return _error(status.HTTP_400_BAD_REQUEST, "registration failed")
    return {"success": True, "credentialId": encoding_utils.base64url_encode(credential.id)}


@router.get("/", response_model=List[PasskeyResponse], summary="List the current user's passkeys")
async def list_passkeys(user: User = Depends(get_current_user)):
    credentials = await passgate_service.credentials.list_active_for_owner(user.id)
    return [
        PasskeyResponse(
            id=encoding_utils.base64url_encode(cred.id),
            title=await credential_title(cred),
            created_at=cred.created_at,
            last_used_at=cred.last_used_at,
            transports=cred.transports or [],
        )
        for cred in credentials
    ]


@router.get("/debug", summary="Relying party diagnostics for development")
async def debug_config(request: Request):
    """
    Shows which RP the current Host header resolves to and what the browser
    will be checked against. Disabled (404) unless PASSKEY_DEBUG_ENDPOINT is set.
    """
    if not settings.PASSKEY_DEBUG_ENDPOINT:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Not found")
    resolver = get_rp_resolver()
    host = get_request_host(request)
    ctx = await get_ceremony_context(request)

    recommendations = []
    if request.url.scheme != "https" and not is_development_host(host):
        recommendations.append("WebAuthn requires HTTPS outside development hosts.")
    is_host_allowed = getattr(resolver, "is_host_allowed", None)
    if is_host_allowed is not None and not is_host_allowed(host):
        recommendations.append(f"Host '{host}' is not in PASSKEY_ALLOWED_HOSTS, the fallback RP id is used.")
    if not is_registrable_parent(ctx.rp.id, host):
        recommendations.append(
            f"RP id '{ctx.rp.id}' does not match host '{host}'. Browsers will reject every ceremony."
        )

    return {
        "request": {
            "host": request.headers.get("host"),
            "x_forwarded_host": request.headers.get("x-forwarded-host"),
            "origin": request.headers.get("origin"),
            "scheme": request.url.scheme,
            "expected_origin": ctx.expected_origin,
        },
        "relying_party": {"id": ctx.rp.id, "name": ctx.rp.name, "resolver": type(resolver).__name__},
        "policy": {
            "require_user_verification": settings.PASSKEY_REQUIRE_USER_VERIFICATION,
            "require_user_presence": settings.PASSKEY_REQUIRE_USER_PRESENCE,
            "discoverable_login": settings.PASSKEY_DISCOVERABLE_LOGIN,
            "timeout_seconds": settings.PASSKEY_TIMEOUT_SECONDS,
            "challenge_ttl_seconds": settings.PASSKEY_CHALLENGE_TTL_SECONDS,
            "allowed_origins": settings.PASSKEY_ALLOWED_ORIGINS,
        },
        "recommendations": recommendations,
    }


@router.post("/{credential_id_b64}/disable", summary="Disable a passkey without deleting it")
async def disable_passkey(credential_id_b64: str, request: Request, user: User = Depends(get_current_user)):
    credential_id = _decode_id(credential_id_b64)
    try:
        await passgate_service.credentials.disable(
            credential_id, actor=user, ip_address=await get_remote_address(request)
        )
    except (CredentialNotFound, OperationForbiddenError):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Passkey not found.")
    return {"success": True}


@router.post("/{credential_id_b64}/delete", summary="Delete a passkey")
async def delete_passkey(credential_id_b64: str, request: Request, user: User = Depends(get_current_user)):
    """
    Deletes a passkey owned by the current user. Credentials of other users
    answer 404 exactly like unknown ones.
    """
    credential_id = _decode_id(credential_id_b64)
    try:
        await passgate_service.credentials.delete(
            credential_id, actor=user, ip_address=await get_remote_address(request)
        )
    except (CredentialNotFound, OperationForbiddenError):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Passkey not found.")
    return {"success": True}


passkey_router = router

import logging
from typing import Optional

from fastapi import HTTPException, status, Request

from passgate.core.database import User, db_manager
from passgate.core.passkeys import CeremonyContext
from passgate.core.relying_party import RelyingPartyResolver, load_resolver
from passgate.helpers import get_remote_address, get_request_host, get_expected_origin
from passgate.manager.asynchronous import PassGateAsync

logger = logging.getLogger(__name__)

# The primary asynchronous service used by FastAPI dependencies.
passgate_service = PassGateAsync(db_manager)

_resolver: Optional[RelyingPartyResolver] = None


def get_rp_resolver() -> RelyingPartyResolver:
    """The configured resolver, built on first use and reused for the process lifetime."""
    global _resolver
    if _resolver is None:
        _resolver = load_resolver()
    return _resolver


def set_rp_resolver(resolver: Optional[RelyingPartyResolver]):
    """Installs a resolver explicitly (or None to rebuild it from settings on next use)."""
    global _resolver
    _resolver = resolver


class IdentityStore:
    """
    Binds the authenticated subject and in-flight ceremony references to the
    signed session cookie. Nothing secret is stored there: challenge values
    stay in the database and the cookie only holds their references.
    """
    USER_KEY = "passgate_user_id"
    REGISTRATION_KEY = "passgate_registration_ref"
    AUTHENTICATION_KEY = "passgate_authentication_ref"
    BACK_URL_KEY = "passgate_back_url"

    def current_user_id(self, request: Request) -> Optional[str]:
        return request.session.get(self.USER_KEY)

    def log_in(self, request: Request, user: User):
        request.session.pop(self.AUTHENTICATION_KEY, None)
        request.session.pop(self.REGISTRATION_KEY, None)
        request.session[self.USER_KEY] = user.id
        logger.debug(f"Bound user {user.id} to session")

    def set_challenge_ref(self, request: Request, key: str, ref: str):
        request.session[key] = ref

    def pop_challenge_ref(self, request: Request, key: str) -> Optional[str]:
        return request.session.pop(key, None)


identity_store = IdentityStore()


async def get_current_user(request: Request) -> User:
    """
    FastAPI dependency returning the logged-in user bound to the session.
    """
    if getattr(request.state, "user_object", None) is not None:
        return request.state.user_object
    user_id = identity_store.current_user_id(request)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    user = await passgate_service.users.get_by_id(user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found for this session")
    request.state.user_object = user
    return user


async def get_current_user_optional(request: Request) -> Optional[User]:
    """
    Does the same thing as get_current_user but returns None instead of raising
    when nobody is logged in.
    """
    try:
        return await get_current_user(request)
    except HTTPException as e:
        if e.status_code == status.HTTP_401_UNAUTHORIZED:
            return None
        raise


async def get_ceremony_context(request: Request) -> CeremonyContext:
    """Resolves the RP for this request's host and captures the binding attributes."""
    rp = get_rp_resolver().resolve(get_request_host(request))
    return CeremonyContext(
        rp=rp,
        expected_origin=get_expected_origin(request),
        user_agent=request.headers.get("user-agent"),
        ip_address=await get_remote_address(request),
    )

from .fastapi_integration import (
    passgate_service, identity_store, IdentityStore, get_current_user, get_current_user_optional,
    get_ceremony_context, get_rp_resolver, set_rp_resolver
)

"""
Relying Party resolution.

Maps the host a request was served on to the WebAuthn RP entity. The RP id
must match what the browser derives from the page origin, so a stale or
wrong value makes every ceremony fail. Results are cached per tenant and the
cache must be invalidated whenever a tenant's domains or title change.
"""
import importlib
import ipaddress
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, List

from passgate.core.config import settings

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}

# First labels that read better as a fixed name than as "<Label> Site".
SPECIAL_NAMES = {
    "shop": "Shop",
    "store": "Store",
    "blog": "Blog",
    "api": "API",
    "admin": "Admin",
    "portal": "Portal",
    "dashboard": "Dashboard",
    "app": "Application",
    "demo": "Demo",
    "staging": "Staging",
    "dev": "Development",
    "test": "Testing",
}

_STRIP_PREFIX_RE = re.compile(r"^(www\.|m\.|mobile\.)")


@dataclass(frozen=True)
class RelyingParty:
    id: str
    name: str

    def to_entity(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True)
class Tenant:
    """A logical site served by this deployment (a subsite in multi-tenant setups)."""
    key: str
    title: Optional[str] = None
    domains: Tuple[str, ...] = field(default_factory=tuple)


def clean_host(value: Optional[str]) -> str:
    """Strips scheme, credentials, port, path and query from a host/URL and lower-cases it."""
    if not value:
        return ""
    host = value.strip().lower()
    host = re.sub(r"^[a-z][a-z0-9+.-]*://", "", host)
    host = re.split(r"[/?#]", host, maxsplit=1)[0]
    host = host.rsplit("@", 1)[-1]
    if host.startswith("["):
        # [::1]:8000
        return host[1:].split("]", 1)[0]
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


def is_loopback(host: str) -> bool:
    host = clean_host(host)
    if host in LOOPBACK_HOSTS or host.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def is_registrable_parent(rp_id: str, host: str) -> bool:
    """
    True if rp_id equals host or is a parent domain of it. A bare TLD is never
    accepted as a parent.
    """
    rp_id, host = clean_host(rp_id), clean_host(host)
    if not rp_id or not host:
        return False
    if rp_id == host:
        return True
    if "." not in rp_id:
        return False
    return host.endswith("." + rp_id)


def humanize_domain(domain: str) -> str:
    """Builds a display name from a domain's first label."""
    clean = _STRIP_PREFIX_RE.sub("", clean_host(domain))
    parts = clean.split(".")
    main = parts[0]
    if main in SPECIAL_NAMES:
        return SPECIAL_NAMES[main]
    if not main:
        return settings.APP_NAME
    readable = main.capitalize()
    if len(parts) <= 2:
        readable += " Site"
    return readable


class TenantProvider(ABC):
    """Tells the resolver which tenant a host belongs to."""

    @abstractmethod
    def current_tenant(self, host: str) -> Optional[Tenant]:
        raise NotImplementedError


class SingleTenantProvider(TenantProvider):
    def current_tenant(self, host: str) -> Optional[Tenant]:
        return None


class StaticTenantProvider(TenantProvider):
    """Tenant lookup from a fixed list, matched on any of the tenant's domains."""

    def __init__(self, tenants: List[Tenant] = None):
        self._by_host: Dict[str, Tenant] = {}
        for tenant in tenants or []:
            self.add(tenant)

    def add(self, tenant: Tenant):
        for domain in tenant.domains:
            self._by_host[clean_host(domain)] = tenant

    def current_tenant(self, host: str) -> Optional[Tenant]:
        return self._by_host.get(clean_host(host))


class RelyingPartyResolver(ABC):
    """Resolves the RP entity for the host of the current request."""

    @abstractmethod
    def resolve(self, request_host: str) -> RelyingParty:
        raise NotImplementedError

    def invalidate(self, tenant_key: Optional[str] = None):
        """Drops cached RP entities. Resolvers without a cache do nothing."""
        return None


class HostRelyingPartyResolver(RelyingPartyResolver):
    """
    Resolves the RP id from the request host validated against an allow-list
    and the RP name through (in order) the per-domain override table, the
    tenant title, the global configured name, and finally the humanized domain.
    """

    def __init__(
            self,
            allowed_hosts: Optional[List[str]] = None,
            rp_name: Optional[str] = None,
            domain_names: Optional[Dict[str, str]] = None,
            domain_rp_ids: Optional[Dict[str, str]] = None,
            tenant_provider: Optional[TenantProvider] = None,
    ):
        hosts = settings.PASSKEY_ALLOWED_HOSTS if allowed_hosts is None else allowed_hosts
        self.allowed_hosts = [clean_host(h) for h in hosts if clean_host(h)]
        self.rp_name = settings.PASSKEY_RP_NAME if rp_name is None else rp_name
        names = settings.PASSKEY_DOMAIN_NAMES if domain_names is None else domain_names
        self.domain_names = {clean_host(k): v for k, v in names.items()}
        rp_ids = settings.PASSKEY_DOMAIN_RP_IDS if domain_rp_ids is None else domain_rp_ids
        self.domain_rp_ids = {clean_host(k): clean_host(v) for k, v in rp_ids.items()}
        self.tenant_provider = tenant_provider or SingleTenantProvider()
        self._cache: Dict[Tuple[Optional[str], str], RelyingParty] = {}
        self._lock = threading.Lock()

        for host, rp_id in self.domain_rp_ids.items():
            if not is_registrable_parent(rp_id, host):
                raise ValueError(f"RP id override '{rp_id}' is not a registrable parent of '{host}'.")

    def is_host_allowed(self, host: str) -> bool:
        host = clean_host(host)
        return host in self.allowed_hosts or is_loopback(host)

    def resolve_id(self, request_host: str) -> str:
        host = clean_host(request_host)
        if host and self.is_host_allowed(host):
            return self.domain_rp_ids.get(host, host)
        if self.allowed_hosts:
            fallback = self.allowed_hosts[0]
            return self.domain_rp_ids.get(fallback, fallback)
        return "localhost"

    def resolve_name(self, host: str, tenant: Optional[Tenant]) -> str:
        if host in self.domain_names:
            return self.domain_names[host]
        if tenant and tenant.title:
            return tenant.title
        if self.rp_name:
            return self.rp_name
        return humanize_domain(host)

    def resolve(self, request_host: str) -> RelyingParty:
        host = clean_host(request_host)
        if not self.is_host_allowed(host):
            # Untrusted input never reaches the RP entity, not even its name.
            logger.warning(f"Host '{host}' is not in the passkey allow-list, falling back to the default RP id.")
            host = self.allowed_hosts[0] if self.allowed_hosts else "localhost"
        tenant = self.tenant_provider.current_tenant(host)
        cache_key = (tenant.key if tenant else None, host)
        with self._lock:
            cached = self._cache.get(cache_key)
        if cached:
            return cached

        rp = RelyingParty(id=self.resolve_id(host), name=self.resolve_name(host, tenant))
        with self._lock:
            self._cache[cache_key] = rp
        logger.debug(f"Resolved relying party {rp.id!r} ({rp.name!r}) for host {host!r}")
        return rp

    def invalidate(self, tenant_key: Optional[str] = None):
        """
        Clears cached entities for one tenant, or everything when tenant_key is None.
        """
        with self._lock:
            if tenant_key is None:
                self._cache.clear()
            else:
                for key in [k for k in self._cache if k[0] == tenant_key]:
                    del self._cache[key]

    def switch_tenant(self, provider: TenantProvider):
        """Replaces the tenant provider and drops every cached entity."""
        self.tenant_provider = provider
        self.invalidate()


def import_string(dotted_path: str):
    module_path, _, attr = dotted_path.rpartition(".")
    if not module_path:
        raise ImportError(f"'{dotted_path}' is not a dotted path.")
    module = importlib.import_module(module_path)
    try:
        return getattr(module, attr)
    except AttributeError:
        raise ImportError(f"Module '{module_path}' has no attribute '{attr}'.")


def load_resolver() -> RelyingPartyResolver:
    """
    Builds the configured resolver once, at startup. The resolver class and
    the optional tenant provider come from settings.
    """
    tenant_provider = None
    if settings.PASSKEY_TENANT_PROVIDER:
        tenant_provider = import_string(settings.PASSKEY_TENANT_PROVIDER)()
    resolver_cls = import_string(settings.PASSKEY_RP_RESOLVER)
    if isinstance(resolver_cls, type) and issubclass(resolver_cls, HostRelyingPartyResolver):
        resolver = resolver_cls(tenant_provider=tenant_provider)
    else:
        resolver = resolver_cls()
    if not isinstance(resolver, RelyingPartyResolver):
        raise TypeError(f"{settings.PASSKEY_RP_RESOLVER} is not a RelyingPartyResolver.")
    logger.info(f"Using relying party resolver {type(resolver).__name__}")
    return resolver

import pytest

from passgate.core.config import get_settings
from passgate.core.relying_party import (
    HostRelyingPartyResolver, RelyingParty, RelyingPartyResolver, StaticTenantProvider, Tenant,
    clean_host, humanize_domain, is_loopback, is_registrable_parent, load_resolver
)


class FixedResolver(RelyingPartyResolver):
    def resolve(self, request_host: str) -> RelyingParty:
        return RelyingParty(id="fixed.example.com", name="Fixed")


@pytest.fixture
def resolver():
    return HostRelyingPartyResolver(
        allowed_hosts=["example.com", "shop.example.com"], rp_name=None, domain_names={}, domain_rp_ids={}
    )


@pytest.mark.parametrize("value, expected", [
    ("https://Shop.Example.com:8443/login?x=1", "shop.example.com"),
    ("example.com.", "example.com"),
    ("user:pw@example.com:80", "example.com"),
    ("[::1]:8000", "::1"),
    ("", ""),
    (None, ""),
])
def test_clean_host(value, expected):
    assert clean_host(value) == expected


def test_loopback_hosts():
    assert is_loopback("localhost:8000")
    assert is_loopback("127.0.0.1")
    assert is_loopback("app.localhost")
    assert not is_loopback("example.com")


def test_registrable_parent():
    assert is_registrable_parent("example.com", "shop.example.com")
    assert is_registrable_parent("example.com", "example.com")
    assert not is_registrable_parent("example.com", "evilexample.com")
    assert not is_registrable_parent("com", "example.com")
    assert not is_registrable_parent("shop.example.com", "example.com")


@pytest.mark.parametrize("domain, expected", [
    ("shop.example.com", "Shop"),
    ("api.example.com", "API"),
    ("www.example.com", "Example Site"),
    ("m.acme.org", "Acme Site"),
    ("news.example.co.uk", "News"),
    ("app.example.com", "Application"),
])
def test_humanize_domain(domain, expected):
    assert humanize_domain(domain) == expected


def test_subdomain_keeps_its_own_rp_id(resolver):
    rp = resolver.resolve("shop.example.com")
    assert rp.id == "shop.example.com"
    assert rp.name == "Shop"


def test_override_maps_subdomain_to_parent():
    resolver = HostRelyingPartyResolver(
        allowed_hosts=["example.com", "shop.example.com"], rp_name=None,
        domain_names={"shop.example.com": "Example Shop"}, domain_rp_ids={"shop.example.com": "example.com"},
    )
    rp = resolver.resolve("https://shop.example.com:443/")
    assert rp == RelyingParty(id="example.com", name="Example Shop")


def test_override_must_be_a_parent():
    with pytest.raises(ValueError):
        HostRelyingPartyResolver(allowed_hosts=["shop.example.com"], domain_rp_ids={"shop.example.com": "other.com"})


def test_untrusted_host_falls_back_to_first_allowed(resolver):
    rp = resolver.resolve("evil.example.net")
    assert rp.id == "example.com"
    assert "evil" not in rp.name.lower()


def test_localhost_always_permitted(resolver):
    assert resolver.resolve("localhost:8000").id == "localhost"
    assert resolver.resolve("127.0.0.1").id == "127.0.0.1"


def test_no_allow_list_falls_back_to_localhost():
    resolver = HostRelyingPartyResolver(allowed_hosts=[], rp_name=None, domain_names={}, domain_rp_ids={})
    assert resolver.resolve("example.com").id == "localhost"


def test_name_resolution_order():
    tenants = StaticTenantProvider([Tenant(key="shop", title="Shop Tenant", domains=("shop.example.com",))])
    resolver = HostRelyingPartyResolver(
        allowed_hosts=["example.com", "shop.example.com", "blog.example.com"], rp_name="Global Name",
        domain_names={"example.com": "Apex Override"}, domain_rp_ids={}, tenant_provider=tenants,
    )
    assert resolver.resolve("example.com").name == "Apex Override"
    assert resolver.resolve("shop.example.com").name == "Shop Tenant"
    assert resolver.resolve("blog.example.com").name == "Global Name"


def test_cache_is_invalidated_per_tenant():
    tenants = StaticTenantProvider([Tenant(key="shop", title="Old Title", domains=("shop.example.com",))])
    resolver = HostRelyingPartyResolver(
        allowed_hosts=["shop.example.com"], rp_name=None, domain_names={}, domain_rp_ids={},
        tenant_provider=tenants,
    )
    first = resolver.resolve("shop.example.com")
    assert resolver.resolve("shop.example.com") is first

    tenants.add(Tenant(key="shop", title="New Title", domains=("shop.example.com",)))
    assert resolver.resolve("shop.example.com").name == "Old Title"

    resolver.invalidate("other-tenant")
    assert resolver.resolve("shop.example.com").name == "Old Title"

    resolver.invalidate("shop")
    assert resolver.resolve("shop.example.com").name == "New Title"


def test_switch_tenant_drops_cache():
    resolver = HostRelyingPartyResolver(
        allowed_hosts=["shop.example.com"], rp_name=None, domain_names={}, domain_rp_ids={},
    )
    assert resolver.resolve("shop.example.com").name == "Shop"
    resolver.switch_tenant(StaticTenantProvider([Tenant(key="t2", title="Tenant Two",
                                                        domains=("shop.example.com",))]))
    assert resolver.resolve("shop.example.com").name == "Tenant Two"


def test_load_resolver_from_settings():
    resolver = load_resolver()
    assert isinstance(resolver, HostRelyingPartyResolver)
    assert resolver.allowed_hosts == ["example.com", "shop.example.com"]


def test_load_custom_resolver(monkeypatch):
    monkeypatch.setattr(get_settings(), "PASSKEY_RP_RESOLVER", f"{__name__}.FixedResolver")
    resolver = load_resolver()
    assert resolver.resolve("anything").id == "fixed.example.com"


def test_load_resolver_rejects_non_resolver(monkeypatch):
    monkeypatch.setattr(get_settings(), "PASSKEY_RP_RESOLVER", "passgate.core.relying_party.Tenant")
    with pytest.raises((TypeError, ValueError)):
        load_resolver()

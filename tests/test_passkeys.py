import asyncio
import json
from unittest.mock import AsyncMock

import cbor2
import pytest
from sqlalchemy import select, update

from passgate.core.config import get_settings
from passgate.core.database import AuditEvent, PasskeyCredential, User, db_manager
from passgate.core.exceptions import (
    ChallengeExpired, ChallengeMismatch, CounterRegression, CredentialAlreadyExists, CredentialNotFound,
    MalformedClientData, NoCredentialsRegistered, OriginMismatch, RpIdMismatch, SignatureInvalid,
    UserVerificationRequired
)
from passgate.core.hooks import Events, hook_manager
from passgate.core.passkeys import (
    CeremonyContext, FLAG_ED, parse_authenticator_data, verify_origin
)
from passgate.core.relying_party import RelyingParty
from softauthn import FLAG_AT, FLAG_UP, FLAG_UV, SoftwareAuthenticator, b64url_decode, b64url_encode

ORIGIN = "https://example.com"
UA = "pytest-agent/1.0"


def make_ctx(rp, origin=ORIGIN, user_agent=UA):
    return CeremonyContext(rp=rp, expected_origin=origin, user_agent=user_agent, ip_address="127.0.0.1")


def edit_client_data(response, **changes):
    client_data = json.loads(b64url_decode(response["response"]["clientDataJSON"]))
    client_data.update(changes)
    response["response"]["clientDataJSON"] = b64url_encode(json.dumps(client_data).encode())
    return response


async def register(service, user, rp, authenticator, origin=ORIGIN, **kwargs):
    ref, options = await service.passkeys.begin_registration(user, rp, UA)
    response = authenticator.make_credential(options, origin, **kwargs)
    return await service.passkeys.finish_registration(user, response, ref, make_ctx(rp))


async def authenticate(service, rp, authenticator, **kwargs):
    ref, options = await service.passkeys.begin_authentication(rp, UA)
    response = authenticator.get_assertion(options, ORIGIN, **kwargs)
    return await service.passkeys.finish_authentication(response, ref, make_ctx(rp))


async def stored_credentials():
    async with db_manager.get_db() as db:
        return list((await db.execute(select(PasskeyCredential))).scalars().all())


async def audit_types():
    async with db_manager.get_db() as db:
        return [e.event_type for e in (await db.execute(select(AuditEvent).order_by(AuditEvent.id))).scalars()]


# --- Registration ---

async def test_registration_stores_reported_counter(service, user, rp, authenticator):
    credential = await register(service, user, rp, authenticator)

    stored = await service.credentials.find_by_id(credential.id)
    assert stored.user_id == user.id
    assert stored.sign_count == 1
    assert stored.is_active is True
    assert stored.aaguid == b"\x00" * 16
    assert stored.attestation_format == "none"
    assert stored.transports == ["internal"]
    assert stored.last_used_at is None
    assert "PASSKEY_REGISTERED" in await audit_types()


async def test_registration_from_evil_origin_writes_nothing(service, user, rp, authenticator):
    with pytest.raises(OriginMismatch):
        await register(service, user, rp, authenticator, origin="https://evil.example")
    assert await stored_credentials() == []
    assert "PASSKEY_REGISTRATION_FAILED" in await audit_types()


async def test_registration_rp_hash_mismatch(service, user, rp, authenticator):
    with pytest.raises(RpIdMismatch):
        await register(service, user, rp, authenticator, rp_id="other.example.org")
    assert await stored_credentials() == []


async def test_registration_challenge_mismatch(service, user, rp, authenticator):
    ref, options = await service.passkeys.begin_registration(user, rp, UA)
    options["publicKey"]["challenge"] = b64url_encode(b"\x00" * 32)
    response = authenticator.make_credential(options, ORIGIN)
    with pytest.raises(ChallengeMismatch):
        await service.passkeys.finish_registration(user, response, ref, make_ctx(rp))


async def test_registration_wrong_client_data_type(service, user, rp, authenticator):
    ref, options = await service.passkeys.begin_registration(user, rp, UA)
    response = edit_client_data(authenticator.make_credential(options, ORIGIN), type="webauthn.get")
    with pytest.raises(MalformedClientData):
        await service.passkeys.finish_registration(user, response, ref, make_ctx(rp))


async def test_registration_replay_fails_with_challenge_expired(service, user, rp, authenticator):
    ref, options = await service.passkeys.begin_registration(user, rp, UA)
    response = authenticator.make_credential(options, ORIGIN)
    await service.passkeys.finish_registration(user, response, ref, make_ctx(rp))
    with pytest.raises(ChallengeExpired):
        await service.passkeys.finish_registration(user, response, ref, make_ctx(rp))


async def test_malformed_payload_still_consumes_challenge(service, user, rp, authenticator):
    ref, options = await service.passkeys.begin_registration(user, rp, UA)
    with pytest.raises(MalformedClientData):
        await service.passkeys.finish_registration(user, {"id": "x"}, ref, make_ctx(rp))

    response = authenticator.make_credential(options, ORIGIN)
    with pytest.raises(ChallengeExpired):
        await service.passkeys.finish_registration(user, response, ref, make_ctx(rp))


async def test_unsupported_attestation_format(service, user, rp, authenticator):
    with pytest.raises(MalformedClientData):
        await register(service, user, rp, authenticator, fmt="x-custom")


async def test_registration_requires_user_verification(service, user, rp, authenticator):
    with pytest.raises(UserVerificationRequired):
        await register(service, user, rp, authenticator, flags=FLAG_UP | FLAG_AT)


async def test_registration_without_uv_when_policy_allows(service, user, rp, authenticator, monkeypatch):
    monkeypatch.setattr(get_settings(), "PASSKEY_REQUIRE_USER_VERIFICATION", False)
    credential = await register(service, user, rp, authenticator, flags=FLAG_UP | FLAG_AT)
    assert credential.is_active


async def test_duplicate_credential_id_across_owners(service, user, other_user, rp, authenticator):
    credential_id = b"shared-credential-id"
    await register(service, user, rp, authenticator, credential_id=credential_id)
    with pytest.raises(CredentialAlreadyExists):
        await register(service, other_user, rp, authenticator, credential_id=credential_id)
    owners = [c.user_id for c in await stored_credentials()]
    assert owners == [user.id]


async def test_concurrent_registration_of_same_credential_id(service, user, rp, authenticator):
    credential_id = b"raced-credential-id"
    ref_a, options_a = await service.passkeys.begin_registration(user, rp, UA)
    ref_b, options_b = await service.passkeys.begin_registration(user, rp, UA)
    response_a = authenticator.make_credential(options_a, ORIGIN, credential_id=credential_id)
    response_b = authenticator.make_credential(options_b, ORIGIN, credential_id=credential_id)

    results = await asyncio.gather(
        service.passkeys.finish_registration(user, response_a, ref_a, make_ctx(rp)),
        service.passkeys.finish_registration(user, response_b, ref_b, make_ctx(rp)),
        return_exceptions=True,
    )
    assert sum(1 for r in results if isinstance(r, PasskeyCredential)) == 1
    assert sum(1 for r in results if isinstance(r, CredentialAlreadyExists)) == 1
    assert len(await stored_credentials()) == 1


async def test_registered_hook_is_triggered(service, user, rp, authenticator):
    hook = AsyncMock(__name__="on_registered")
    hook_manager.register(Events.PASSKEY_REGISTERED, hook)
    credential = await register(service, user, rp, authenticator)
    hook.assert_awaited_once()
    assert hook.await_args.kwargs["credential"].id == credential.id


# --- Authentication ---

async def test_authentication_updates_state(service, user, rp, authenticator):
    credential = await register(service, user, rp, authenticator)
    authenticated_user, used = await authenticate(service, rp, authenticator)

    assert authenticated_user.id == user.id
    assert used.id == credential.id
    stored = await service.credentials.find_by_id(credential.id)
    assert stored.sign_count == 2
    assert stored.last_used_at is not None
    assert stored.last_user_agent == UA
    assert "PASSKEY_LOGIN_SUCCESS" in await audit_types()


async def test_counterless_authenticator_is_accepted(service, user, rp, authenticator):
    authenticator.counter_enabled = False
    credential = await register(service, user, rp, authenticator)
    assert credential.sign_count == 0
    await authenticate(service, rp, authenticator)
    await authenticate(service, rp, authenticator)
    assert (await service.credentials.find_by_id(credential.id)).sign_count == 0


@pytest.mark.parametrize("reported", [0, 3, 5])
async def test_counter_regression_rejected_without_state_change(service, user, rp, authenticator, reported):
    credential = await register(service, user, rp, authenticator)
    await authenticate(service, rp, authenticator, sign_count=5)

    with pytest.raises(CounterRegression):
        await authenticate(service, rp, authenticator, sign_count=reported)

    stored = await service.credentials.find_by_id(credential.id)
    assert stored.sign_count == 5
    assert stored.is_active is True
    assert "PASSKEY_COUNTER_REGRESSION" in await audit_types()


async def test_counter_regression_can_disable_credential(service, user, rp, authenticator, monkeypatch):
    monkeypatch.setattr(get_settings(), "PASSKEY_DISABLE_ON_COUNTER_REGRESSION", True)
    hook = AsyncMock(__name__="on_regression")
    hook_manager.register(Events.COUNTER_REGRESSION, hook)
    credential = await register(service, user, rp, authenticator)

    with pytest.raises(CounterRegression):
        await authenticate(service, rp, authenticator, sign_count=1)

    assert (await service.credentials.find_by_id(credential.id)).is_active is False
    hook.assert_awaited_once()
    with pytest.raises(NoCredentialsRegistered):
        await service.passkeys.begin_authentication(rp, UA)


async def test_concurrent_assertions_with_same_counter(service, user, rp, authenticator):
    credential = await register(service, user, rp, authenticator)
    ref_a, options_a = await service.passkeys.begin_authentication(rp, UA)
    ref_b, options_b = await service.passkeys.begin_authentication(rp, UA)
    response_a = authenticator.get_assertion(options_a, ORIGIN, sign_count=7)
    response_b = authenticator.get_assertion(options_b, ORIGIN, sign_count=7)

    results = await asyncio.gather(
        service.passkeys.finish_authentication(response_a, ref_a, make_ctx(rp)),
        service.passkeys.finish_authentication(response_b, ref_b, make_ctx(rp)),
        return_exceptions=True,
    )
    assert sum(1 for r in results if isinstance(r, tuple)) == 1
    assert sum(1 for r in results if isinstance(r, CounterRegression)) == 1
    assert (await service.credentials.find_by_id(credential.id)).sign_count == 7


async def test_authentication_replay_fails(service, user, rp, authenticator):
    await register(service, user, rp, authenticator)
    ref, options = await service.passkeys.begin_authentication(rp, UA)
    response = authenticator.get_assertion(options, ORIGIN)
    await service.passkeys.finish_authentication(response, ref, make_ctx(rp))
    with pytest.raises(ChallengeExpired):
        await service.passkeys.finish_authentication(response, ref, make_ctx(rp))


async def test_unknown_and_disabled_credentials(service, user, rp, authenticator):
    credential = await register(service, user, rp, authenticator)
    await register(service, user, rp, SoftwareAuthenticator())
    ref, options = await service.passkeys.begin_authentication(rp, UA)
    response = authenticator.get_assertion(options, ORIGIN)
    response["id"] = response["rawId"] = b64url_encode(b"unknown-credential")
    with pytest.raises(CredentialNotFound):
        await service.passkeys.finish_authentication(response, ref, make_ctx(rp))

    await service.credentials.disable(credential.id, actor=user)
    with pytest.raises(CredentialNotFound):
        await authenticate(service, rp, authenticator)


async def test_inactive_owner_leaves_credential_untouched(service, user, rp, authenticator):
    credential = await register(service, user, rp, authenticator)
    async with db_manager.get_db() as db:
        await db.execute(update(User).where(User.id == user.id).values(is_active=False))
        await db.commit()

    with pytest.raises(CredentialNotFound):
        await authenticate(service, rp, authenticator, sign_count=9)

    stored = await service.credentials.find_by_id(credential.id)
    assert stored.sign_count == 1
    assert stored.last_used_at is None
    assert "PASSKEY_LOGIN_FAILED" in await audit_types()


async def test_credential_disabled_mid_ceremony(service, user, rp, authenticator, monkeypatch):
    monkeypatch.setattr(get_settings(), "PASSKEY_DISABLE_ON_COUNTER_REGRESSION", True)
    credential = await register(service, user, rp, authenticator)
    await register(service, user, rp, SoftwareAuthenticator())
    record_use = service.credentials.record_use

    async def disable_then_record(credential_id, *args, **kwargs):
        await service.credentials.disable(credential_id, actor=user)
        return await record_use(credential_id, *args, **kwargs)

    monkeypatch.setattr(service.credentials, "record_use", disable_then_record)
    with pytest.raises(CredentialNotFound):
        await authenticate(service, rp, authenticator)

    types = await audit_types()
    assert "PASSKEY_COUNTER_REGRESSION" not in types
    assert types.count("PASSKEY_DISABLED") == 1
    assert (await service.credentials.find_by_id(credential.id)).sign_count == 1


async def test_tampered_client_data_breaks_signature(service, user, rp, authenticator):
    await register(service, user, rp, authenticator)
    ref, options = await service.passkeys.begin_authentication(rp, UA)
    response = edit_client_data(authenticator.get_assertion(options, ORIGIN), tokenBinding={"status": "absent"})
    with pytest.raises(SignatureInvalid):
        await service.passkeys.finish_authentication(response, ref, make_ctx(rp))


async def test_user_handle_must_match_owner(service, user, rp, authenticator):
    await register(service, user, rp, authenticator)
    ref, options = await service.passkeys.begin_authentication(rp, UA)
    response = authenticator.get_assertion(options, ORIGIN)
    response["response"]["userHandle"] = b64url_encode(b"someone-else")
    with pytest.raises(CredentialNotFound):
        await service.passkeys.finish_authentication(response, ref, make_ctx(rp))


async def test_assertion_without_user_handle(service, user, rp, authenticator):
    await register(service, user, rp, authenticator)
    authenticated_user, _ = await authenticate(service, rp, authenticator, include_user_handle=False)
    assert authenticated_user.id == user.id


async def test_authentication_requires_user_presence(service, user, rp, authenticator):
    await register(service, user, rp, authenticator)
    with pytest.raises(UserVerificationRequired):
        await authenticate(service, rp, authenticator, flags=FLAG_UV)


async def test_rp_must_be_stable_between_issue_and_verify(service, user, rp, authenticator):
    await register(service, user, rp, authenticator)
    ref, options = await service.passkeys.begin_authentication(rp, UA)
    response = authenticator.get_assertion(options, ORIGIN)
    other_rp = RelyingParty(id="shop.example.com", name="Shop")
    with pytest.raises((RpIdMismatch, OriginMismatch)):
        await service.passkeys.finish_authentication(
            response, ref, make_ctx(other_rp, origin="https://shop.example.com")
        )


async def test_non_discoverable_login_lists_credentials(service, user, rp, authenticator, monkeypatch):
    monkeypatch.setattr(get_settings(), "PASSKEY_DISCOVERABLE_LOGIN", False)
    credential = await register(service, user, rp, authenticator)
    _, options = await service.passkeys.begin_authentication(rp, UA)
    assert options["allowCredentials"] == [{"type": "public-key", "id": b64url_encode(credential.id)}]


# --- Parsing helpers ---

def test_authenticator_data_too_short():
    with pytest.raises(MalformedClientData):
        parse_authenticator_data(b"\x00" * 36)


def test_authenticator_data_trailing_bytes():
    with pytest.raises(MalformedClientData):
        parse_authenticator_data(b"\x00" * 32 + bytes([FLAG_UP]) + b"\x00\x00\x00\x01" + b"junk")


def test_authenticator_data_extensions():
    data = b"\x11" * 32 + bytes([FLAG_UP | FLAG_ED]) + (9).to_bytes(4, "big") + cbor2.dumps({"credProtect": 2})
    parsed = parse_authenticator_data(data)
    assert parsed.sign_count == 9
    assert parsed.user_present and not parsed.user_verified
    assert parsed.extensions == {"credProtect": 2}


def test_verify_origin(rp, monkeypatch):
    ctx = make_ctx(rp)
    verify_origin("https://example.com", ctx)
    verify_origin("https://EXAMPLE.com/", ctx)
    with pytest.raises(OriginMismatch):
        verify_origin("http://example.com", ctx)
    with pytest.raises(OriginMismatch):
        verify_origin("https://shop.example.com", ctx)

    monkeypatch.setattr(get_settings(), "PASSKEY_ALLOWED_ORIGINS", ["https://shop.example.com"])
    verify_origin("https://shop.example.com", ctx)

    monkeypatch.setattr(get_settings(), "PASSKEY_ALLOWED_ORIGINS", ["https://evil.example"])
    with pytest.raises(OriginMismatch):
        verify_origin("https://evil.example", ctx)

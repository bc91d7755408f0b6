"""
Core logic for verifying WebAuthn ceremonies.

Client responses are parsed and checked by hand (CBOR via cbor2, signatures via
cryptography). Every check failure raises a specific CeremonyError subclass;
callers are expected to collapse those into a generic failure for the client.

Attestation statements are accepted by format only and never verified against
a trust chain. A registered credential proves possession of a key pair, not
the make or model of the authenticator that holds it.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import Optional, Dict, Any, List, Tuple, Union
from urllib.parse import urlparse

import cbor2
from pydantic import BaseModel, ValidationError

from passgate.core import cose
from passgate.core.challenges import BoundChallenge
from passgate.core.config import settings
from passgate.core.counter import CounterPolicy, enforce as enforce_counter
from passgate.core.database import DatabaseManager, PasskeyCredential, User
from passgate.core.encoding import encoding_utils
from passgate.core.exceptions import (
    ChallengeMismatch, OriginMismatch, RpIdMismatch, CredentialNotFound, CounterRegression,
    MalformedClientData, UserVerificationRequired
)
from passgate.core.hooks import hook_manager, Events
from passgate.core.relying_party import RelyingParty, clean_host, is_registrable_parent

logger = logging.getLogger(__name__)

# Authenticator data flag bits
FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_AT = 0x40
FLAG_ED = 0x80


# --- Client payloads ---

class AttestationResponse(BaseModel):
    attestationObject: str
    clientDataJSON: str
    transports: Optional[List[str]] = None


class RegistrationPayload(BaseModel):
    id: str
    rawId: str
    type: str = "public-key"
    response: AttestationResponse


class AssertionResponse(BaseModel):
    authenticatorData: str
    clientDataJSON: str
    signature: str
    userHandle: Optional[str] = None


class AuthenticationPayload(BaseModel):
    id: str
    rawId: str
    type: str = "public-key"
    response: AssertionResponse


@dataclass(frozen=True)
class CeremonyContext:
    """Per-request facts the verifier checks the client response against."""
    rp: RelyingParty
    expected_origin: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    aaguid: Optional[bytes] = None
    credential_id: Optional[bytes] = None
    credential_public_key: Optional[bytes] = None
    extensions: Dict[Any, Any] = field(default_factory=dict)

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_UP)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_UV)


def _model(model_cls, payload: Union[BaseModel, Dict[str, Any]]):
    if isinstance(payload, model_cls):
        return payload
    try:
        return model_cls.model_validate(payload)
    except ValidationError as e:
        raise MalformedClientData(f"Invalid credential payload: {e.error_count()} validation error(s)")


def _b64(value: Optional[str], name: str) -> bytes:
    try:
        return encoding_utils.base64url_decode(value)
    except (ValueError, TypeError, UnicodeDecodeError):
        raise MalformedClientData(f"Field '{name}' is not base64url encoded.")


def _raw_credential_id(payload) -> bytes:
    raw_id = _b64(payload.rawId, "rawId")
    if not raw_id or _b64(payload.id, "id") != raw_id:
        raise MalformedClientData("Credential 'id' and 'rawId' disagree.")
    if payload.type != "public-key":
        raise MalformedClientData(f"Unexpected credential type '{payload.type}'.")
    return raw_id


def parse_client_data(client_data_json: bytes, expected_type: str) -> Dict[str, Any]:
    """Decodes clientDataJSON and checks its ceremony type."""
    try:
        client_data = json.loads(client_data_json)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise MalformedClientData("clientDataJSON is not valid JSON.")
    if not isinstance(client_data, dict):
        raise MalformedClientData("clientDataJSON is not an object.")
    for key in ("type", "challenge", "origin"):
        if not isinstance(client_data.get(key), str):
            raise MalformedClientData(f"clientDataJSON is missing '{key}'.")
    if client_data["type"] != expected_type:
        raise MalformedClientData(f"Invalid client data type '{client_data['type']}', expected '{expected_type}'.")
    return client_data


def verify_challenge(client_data: Dict[str, Any], bound: BoundChallenge):
    # Exact byte comparison; a clientData challenge in any other encoding is malformed.
    embedded = _b64(client_data["challenge"], "clientDataJSON.challenge")
    if not hmac.compare_digest(embedded, bound.value):
        raise ChallengeMismatch("Challenge in clientDataJSON does not match the issued challenge.")


def normalize_origin(origin: str) -> str:
    return origin.strip().rstrip("/").lower()


def verify_origin(origin: str, ctx: CeremonyContext):
    """
    The origin must be the expected origin of this request (or an explicitly
    configured extra origin) and its host must fall under the RP id.
    """
    origin = normalize_origin(origin)
    allowed = {normalize_origin(ctx.expected_origin)}
    allowed.update(normalize_origin(o) for o in settings.PASSKEY_ALLOWED_ORIGINS)
    if origin not in allowed:
        raise OriginMismatch(f"Origin '{origin}' is not an expected origin for rp '{ctx.rp.id}'.")
    parsed = urlparse(origin)
    if parsed.scheme not in ("https", "http") or not parsed.hostname:
        raise OriginMismatch(f"Origin '{origin}' is not a web origin.")
    if not is_registrable_parent(ctx.rp.id, parsed.hostname):
        raise OriginMismatch(f"Origin host '{parsed.hostname}' is not valid for rp '{ctx.rp.id}'.")


def verify_rp(bound: BoundChallenge, auth_data: AuthenticatorData, ctx: CeremonyContext):
    if clean_host(bound.rp_id) != clean_host(ctx.rp.id):
        raise RpIdMismatch(f"Challenge was issued for rp '{bound.rp_id}' but request resolved to '{ctx.rp.id}'.")
    expected_hash = hashlib.sha256(ctx.rp.id.encode("utf-8")).digest()
    if not hmac.compare_digest(auth_data.rp_id_hash, expected_hash):
        raise RpIdMismatch(f"RP ID hash in authenticator data does not match rp '{ctx.rp.id}'.")


def verify_flags(auth_data: AuthenticatorData):
    if settings.PASSKEY_REQUIRE_USER_PRESENCE and not auth_data.user_present:
        raise UserVerificationRequired("User Present flag not set.")
    if settings.PASSKEY_REQUIRE_USER_VERIFICATION and not auth_data.user_verified:
        raise UserVerificationRequired("User Verified flag not set.")


def parse_authenticator_data(data: bytes) -> AuthenticatorData:
    """
    Parses the authenticator data structure:
    rpIdHash(32) | flags(1) | signCount(4) | [attested credential data] | [extensions]
    """
    if not isinstance(data, (bytes, bytearray)) or len(data) < 37:
        raise MalformedClientData("Authenticator data is too short.")
    data = bytes(data)
    auth_data = AuthenticatorData(
        rp_id_hash=data[:32], flags=data[32], sign_count=int.from_bytes(data[33:37], "big")
    )
    stream = BytesIO(data[37:])
    try:
        if auth_data.flags & FLAG_AT:
            header = stream.read(18)
            if len(header) < 18:
                raise MalformedClientData("Attested credential data is truncated.")
            auth_data.aaguid = header[:16]
            cred_id_len = int.from_bytes(header[16:18], "big")
            auth_data.credential_id = stream.read(cred_id_len)
            if len(auth_data.credential_id) != cred_id_len or cred_id_len == 0:
                raise MalformedClientData("Credential id is truncated.")
            # Re-encode so the stored key is exactly one CBOR item.
            auth_data.credential_public_key = cbor2.dumps(cbor2.load(stream))
        if auth_data.flags & FLAG_ED:
            extensions = cbor2.load(stream)
            if not isinstance(extensions, dict):
                raise MalformedClientData("Authenticator extensions are not a map.")
            auth_data.extensions = extensions
    except (cbor2.CBORDecodeError, EOFError, ValueError) as e:
        raise MalformedClientData(f"Authenticator data could not be decoded: {e}")
    if stream.read():
        raise MalformedClientData("Unexpected trailing bytes in authenticator data.")
    return auth_data


def parse_attestation_object(attestation_object: bytes) -> Tuple[str, AuthenticatorData]:
    try:
        decoded = cbor2.loads(attestation_object)
    except (cbor2.CBORDecodeError, ValueError, EOFError) as e:
        raise MalformedClientData(f"attestationObject is not valid CBOR: {e}")
    if not isinstance(decoded, dict) or not isinstance(decoded.get("authData"), bytes):
        raise MalformedClientData("attestationObject has no authData.")
    fmt = decoded.get("fmt")
    if fmt not in settings.PASSKEY_ATTESTATION_FORMATS:
        raise MalformedClientData(f"Unsupported attestation format: {fmt}")
    # attStmt is never evaluated.
    return fmt, parse_authenticator_data(decoded["authData"])


class CeremonyVerifier:
    """
    Runs the registration and authentication checks against a consumed
    challenge and writes the outcome through the credential store.
    """

    def __init__(self, db_manager: DatabaseManager, credentials, users, counter_policy: CounterPolicy = None):
        self._db_manager = db_manager
        self.credentials = credentials
        self.users = users
        self._counter_policy = counter_policy

    @property
    def counter_policy(self) -> CounterPolicy:
        return self._counter_policy or CounterPolicy.from_settings()

    async def verify_registration(
            self, user: User, payload: Union[RegistrationPayload, Dict[str, Any]], bound: BoundChallenge,
            ctx: CeremonyContext
    ) -> PasskeyCredential:
        payload = _model(RegistrationPayload, payload)
        raw_id = _raw_credential_id(payload)

        client_data_json = _b64(payload.response.clientDataJSON, "clientDataJSON")
        client_data = parse_client_data(client_data_json, "webauthn.create")
        verify_challenge(client_data, bound)
        verify_origin(client_data["origin"], ctx)

        fmt, auth_data = parse_attestation_object(_b64(payload.response.attestationObject, "attestationObject"))
        verify_rp(bound, auth_data, ctx)
        verify_flags(auth_data)
        if not auth_data.flags & FLAG_AT or not auth_data.credential_id:
            raise MalformedClientData("Attested Credential Data flag not set.")
        if auth_data.credential_id != raw_id:
            raise MalformedClientData("Credential id in authenticator data does not match rawId.")

        cose.validate_cose_key(cose.load_cose_key(auth_data.credential_public_key))

        credential = await self.credentials.create(
            credential_id=auth_data.credential_id,
            user_id=user.id,
            public_key=auth_data.credential_public_key,
            sign_count=auth_data.sign_count,
            aaguid=auth_data.aaguid,
            attestation_format=fmt,
            transports=payload.response.transports or [],
            user_agent=ctx.user_agent,
        )
        logger.info(f"Registered passkey {encoding_utils.short_id(credential.id)} for user {user.id} "
                    f"(fmt={fmt}, counter={credential.sign_count})")
        return credential

    async def verify_authentication(
            self, payload: Union[AuthenticationPayload, Dict[str, Any]], bound: BoundChallenge, ctx: CeremonyContext
    ) -> Tuple[User, PasskeyCredential]:
        payload = _model(AuthenticationPayload, payload)
        raw_id = _raw_credential_id(payload)

        credential = await self.credentials.find_by_id(raw_id)
        if credential is None or not credential.is_active:
            raise CredentialNotFound(f"No active credential {encoding_utils.short_id(raw_id)}.")
        user = await self.users.get_by_id(credential.user_id)
        if user is None or not user.is_active:
            raise CredentialNotFound(f"Owner of {encoding_utils.short_id(raw_id)} is missing or inactive.")

        client_data_json = _b64(payload.response.clientDataJSON, "clientDataJSON")
        client_data = parse_client_data(client_data_json, "webauthn.get")
        verify_challenge(client_data, bound)
        verify_origin(client_data["origin"], ctx)

        authenticator_data = _b64(payload.response.authenticatorData, "authenticatorData")
        auth_data = parse_authenticator_data(authenticator_data)
        verify_rp(bound, auth_data, ctx)
        verify_flags(auth_data)

        if payload.response.userHandle:
            handle = _b64(payload.response.userHandle, "userHandle")
            if not hmac.compare_digest(handle, user.user_handle):
                raise CredentialNotFound(
                    f"userHandle does not belong to the owner of {encoding_utils.short_id(raw_id)}."
                )

        signature = _b64(payload.response.signature, "signature")
        cose.verify_signature(
            credential.public_key, signature, authenticator_data + hashlib.sha256(client_data_json).digest()
        )

        try:
            enforce_counter(credential.sign_count, auth_data.sign_count)
        except CounterRegression:
            await self._on_counter_regression(credential, auth_data.sign_count, ctx)
            raise

        # Last step, and the only write: the store re-checks the counter inside the UPDATE,
        # so a concurrent replay loses here.
        if not await self.credentials.record_use(raw_id, auth_data.sign_count, ctx.user_agent):
            current = await self.credentials.find_by_id(raw_id)
            if current is None or not current.is_active:
                raise CredentialNotFound(
                    f"Credential {encoding_utils.short_id(raw_id)} was disabled or deleted during the ceremony."
                )
            await self._on_counter_regression(current, auth_data.sign_count, ctx)
            raise CounterRegression(
                f"Counter for {encoding_utils.short_id(raw_id)} advanced concurrently "
                f"(now {current.sign_count}, reported {auth_data.sign_count})."
            )

        credential.sign_count = auth_data.sign_count
        logger.info(f"Passkey {encoding_utils.short_id(raw_id)} authenticated user {user.id} "
                    f"(counter={auth_data.sign_count})")
        return user, credential

    async def _on_counter_regression(self, credential: PasskeyCredential, reported: int, ctx: CeremonyContext):
        short = encoding_utils.short_id(credential.id)
        policy = self.counter_policy
        logger.warning(f"Counter regression on passkey {short} (user {credential.user_id}): "
                       f"stored={credential.sign_count}, reported={reported}, disable={policy.disable_on_regression}")
        await self._db_manager.log_audit_event(
            credential.user_id, "PASSKEY_COUNTER_REGRESSION", ctx.ip_address,
            {"credential": short, "stored": credential.sign_count, "reported": reported,
             "disabled": policy.disable_on_regression}
        )
        if policy.disable_on_regression:
            await self.credentials.disable(credential.id, actor=None, reason="counter_regression")
        await hook_manager.trigger(
            Events.COUNTER_REGRESSION, credential=credential, reported_counter=reported, context=ctx
        )

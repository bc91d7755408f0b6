"""
Challenge issuance and single-use consumption.

Challenge values live server-side only; the browser session carries an opaque
reference. A challenge is consumed exactly once, by the verification attempt
that follows it, whether that attempt succeeds or not.
"""
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Iterable, Tuple, Dict, Any

from sqlalchemy import delete, select

from passgate.core import cose
from passgate.core.config import settings
from passgate.core.database import DatabaseManager, PasskeyChallenge, User
from passgate.core.encoding import encoding_utils
from passgate.core.exceptions import ChallengeExpired, ChallengeMismatch
from passgate.core.relying_party import RelyingParty

logger = logging.getLogger(__name__)

PURPOSE_REGISTRATION = "registration"
PURPOSE_AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class BoundChallenge:
    ref: str
    value: bytes
    purpose: str
    rp_id: str
    user_id: Optional[str]
    expires_at: float


def user_agent_fingerprint(user_agent: Optional[str]) -> str:
    return encoding_utils.fingerprint(user_agent)


def _descriptor(credential_id: bytes) -> Dict[str, str]:
    return {"type": "public-key", "id": encoding_utils.base64url_encode(credential_id)}


def user_verification_requirement() -> str:
    return "required" if settings.PASSKEY_REQUIRE_USER_VERIFICATION else "preferred"


class ChallengeRegistry:
    """Issues, binds and consumes one-time ceremony challenges."""

    def __init__(self, db_manager: DatabaseManager):
        self._db_manager = db_manager

    async def _store(self, purpose: str, fingerprint: str, rp: RelyingParty,
                     user_id: Optional[str] = None) -> Tuple[str, bytes]:
        value = encoding_utils.gen_random_bytes(settings.PASSKEY_CHALLENGE_BYTES)
        ref = encoding_utils.gen_random_string(48)
        now = time.time()
        async with self._db_manager.get_db() as db:
            # Abandoned ceremonies are swept whenever a new one starts.
            await db.execute(delete(PasskeyChallenge).where(PasskeyChallenge.expires_at < now))
            db.add(PasskeyChallenge(
                id=ref, value=value, purpose=purpose, user_id=user_id, fingerprint=fingerprint,
                rp_id=rp.id, created_at=now, expires_at=now + settings.PASSKEY_CHALLENGE_TTL_SECONDS,
            ))
            await db.commit()
        logger.debug(f"Issued {purpose} challenge for rp {rp.id!r} (user: {user_id or 'anonymous'})")
        return ref, value

    async def issue_registration(
            self, user: User, exclude_credential_ids: Iterable[bytes], fingerprint: str, rp: RelyingParty
    ) -> Tuple[str, Dict[str, Any]]:
        """
        Creates a registration challenge bound to `user` and returns the
        challenge reference plus the PublicKeyCredentialCreationOptions.
        """
        ref, value = await self._store(PURPOSE_REGISTRATION, fingerprint, rp, user_id=user.id)
        resident_key = settings.PASSKEY_RESIDENT_KEY
        options = {
            "publicKey": {
                "challenge": encoding_utils.base64url_encode(value),
                "rp": rp.to_entity(),
                "user": {
                    "id": encoding_utils.base64url_encode(user.user_handle),
                    "name": user.username,
                    "displayName": user.get_display_name(),
                },
                "pubKeyCredParams": cose.pub_key_cred_params(),
                # No authenticatorAttachment, platform and roaming authenticators are both fine.
                "authenticatorSelection": {
                    "residentKey": resident_key,
                    "requireResidentKey": resident_key == "required",
                    "userVerification": user_verification_requirement(),
                },
                "timeout": settings.PASSKEY_TIMEOUT_SECONDS * 1000,
                "excludeCredentials": [_descriptor(cid) for cid in exclude_credential_ids],
                "attestation": "none",
            }
        }
        return ref, options

    async def issue_authentication(
            self, allow_credential_ids: Optional[Iterable[bytes]], fingerprint: str, rp: RelyingParty
    ) -> Tuple[str, Dict[str, Any]]:
        """
        Creates an unbound authentication challenge. An empty allow-list asks the
        authenticator to pick a discoverable credential itself.
        """
        ref, value = await self._store(PURPOSE_AUTHENTICATION, fingerprint, rp)
        options = {
            "challenge": encoding_utils.base64url_encode(value),
            "rpId": rp.id,
            "allowCredentials": [_descriptor(cid) for cid in (allow_credential_ids or [])],
            "userVerification": user_verification_requirement(),
            "timeout": settings.PASSKEY_TIMEOUT_SECONDS * 1000,
        }
        return ref, options

    async def consume(self, challenge_ref: Optional[str], purpose: str, fingerprint: str,
                      user_id: Optional[str] = None) -> BoundChallenge:
        """
        Atomically fetches and deletes a challenge. Only the caller whose DELETE
        removed the row may use it, so concurrent consumers of one challenge
        cannot both succeed. The row is gone afterwards even when a check fails.
        """
        if not challenge_ref:
            raise ChallengeExpired("No challenge reference in session.")

        async with self._db_manager.get_db() as db:
            row = (await db.execute(
                select(PasskeyChallenge).where(PasskeyChallenge.id == challenge_ref)
            )).scalar_one_or_none()
            if row is None:
                raise ChallengeExpired("Challenge not found or already consumed.")
            bound = BoundChallenge(
                ref=row.id, value=row.value, purpose=row.purpose, rp_id=row.rp_id,
                user_id=row.user_id, expires_at=row.expires_at,
            )
            stored_fingerprint = row.fingerprint
            expired = row.is_expired()
            result = await db.execute(delete(PasskeyChallenge).where(PasskeyChallenge.id == challenge_ref))
            await db.commit()

        if result.rowcount != 1:
            raise ChallengeExpired("Challenge was consumed by a concurrent request.")
        if expired:
            raise ChallengeExpired("Challenge expired.")
        if bound.purpose != purpose:
            raise ChallengeMismatch(f"Challenge was issued for {bound.purpose}, not {purpose}.")
        if stored_fingerprint != fingerprint:
            raise ChallengeMismatch("Request fingerprint differs from the one captured at issuance.")
        if bound.user_id is not None and bound.user_id != user_id:
            raise ChallengeMismatch("Challenge is bound to a different subject.")
        return bound

    async def purge_expired(self) -> int:
        """Deletes abandoned challenges. Returns the number of rows removed."""
        async with self._db_manager.get_db() as db:
            result = await db.execute(delete(PasskeyChallenge).where(PasskeyChallenge.expires_at < time.time()))
            await db.commit()
            if result.rowcount:
                logger.info(f"Purged {result.rowcount} expired passkey challenges")
            return result.rowcount

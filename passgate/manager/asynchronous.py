import logging
import time
from typing import Optional, Tuple, List, Dict, Any, Union

from sqlalchemy import select, func, delete, desc, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from passgate.core.challenges import (
    ChallengeRegistry, PURPOSE_REGISTRATION, PURPOSE_AUTHENTICATION, user_agent_fingerprint
)
from passgate.core.config import settings
from passgate.core.counter import CounterPolicy
from passgate.core.database import DatabaseManager, User, PasskeyCredential, AuditEvent
from passgate.core.encoding import encoding_utils
from passgate.core.exceptions import (
    UserAlreadyExistsError, UserNotFoundError, OperationForbiddenError, CredentialAlreadyExists,
    CredentialNotFound, NoCredentialsRegistered, CeremonyError, Unauthenticated
)
from passgate.core.hooks import hook_manager, Events
from passgate.core.passkeys import CeremonyVerifier, CeremonyContext, RegistrationPayload, AuthenticationPayload
from passgate.core.relying_party import RelyingParty

logger = logging.getLogger(__name__)


class UserManager:
    """Manages the local mirror of subjects owned by the host identity system."""

    def __init__(self, db_manager: DatabaseManager):
        self._db_manager = db_manager

    async def get_by_id(self, user_id: str, db: AsyncSession = None) -> Optional[User]:
        async def _get(session: AsyncSession):
            return await session.get(User, user_id)

        if db:
            return await _get(db)
        async with self._db_manager.get_db() as db:
            return await _get(db)

    async def get_by_username(self, username: str) -> Optional[User]:
        async with self._db_manager.get_db() as db:
            stmt = select(User).where(User.username == username)
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def create(self, username: str, email: Optional[str] = None, user_id: Optional[str] = None,
                     ip_address: str = 'system', **kwargs) -> User:
        """Creates a user and logs the audit event in one transaction."""
        async with self._db_manager.get_db() as db:
            stmt = select(User).where(User.username == username)
            if (await db.execute(stmt)).scalar_one_or_none():
                raise UserAlreadyExistsError("A user with this username already exists.")

            new_user = User(
                id=user_id or encoding_utils.gen_random_string(32), username=username, email=email, **kwargs
            )
            db.add(new_user)
            await self._db_manager.log_audit_event(new_user.id, "USER_CREATED", ip_address, {}, db=db)
            try:
                await db.commit()
            except IntegrityError:
                raise UserAlreadyExistsError("A user with this id or username already exists.")
            await db.refresh(new_user)
            return new_user

    async def require(self, user_id: str) -> User:
        user = await self.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError("User not found.")
        return user


class CredentialStore:
    """
    Durable storage for passkey credentials. Uniqueness of credential ids and
    counter monotonicity are enforced by the database statements themselves.
    """

    def __init__(self, db_manager: DatabaseManager):
        self._db_manager = db_manager

    async def create(self, credential_id: bytes, user_id: str, public_key: bytes, sign_count: int,
                     aaguid: Optional[bytes] = None, attestation_format: str = "none",
                     transports: Optional[List[str]] = None, user_agent: Optional[str] = None) -> PasskeyCredential:
        """
        Inserts a new credential. Raises CredentialAlreadyExists when the id is
        already stored, for any owner.
        """
        async with self._db_manager.get_db() as db:
            credential = PasskeyCredential(
                id=credential_id,
                user_id=user_id,
                public_key=public_key,
                sign_count=sign_count,
                aaguid=aaguid,
                attestation_format=attestation_format,
                transports=transports or [],
                is_active=True,
                created_at=time.time(),
                last_user_agent=(user_agent or "")[:512] or None,
            )
            db.add(credential)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise CredentialAlreadyExists(
                    f"Credential {encoding_utils.short_id(credential_id)} is already registered."
                )
            return credential

    async def find_by_id(self, credential_id: bytes) -> Optional[PasskeyCredential]:
        async with self._db_manager.get_db() as db:
            return await db.get(PasskeyCredential, credential_id)

    async def list_active_for_owner(self, user_id: str) -> List[PasskeyCredential]:
        """Active credentials of one subject, newest first."""
        async with self._db_manager.get_db() as db:
            stmt = select(PasskeyCredential).where(
                PasskeyCredential.user_id == user_id,
                PasskeyCredential.is_active.is_(True)
            ).order_by(desc(PasskeyCredential.created_at))
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def list_all_active_ids(self) -> List[bytes]:
        async with self._db_manager.get_db() as db:
            stmt = select(PasskeyCredential.id).where(PasskeyCredential.is_active.is_(True))
            return list((await db.execute(stmt)).scalars().all())

    async def count_active(self, user_id: Optional[str] = None) -> int:
        async with self._db_manager.get_db() as db:
            stmt = select(func.count()).select_from(PasskeyCredential).where(PasskeyCredential.is_active.is_(True))
            if user_id is not None:
                stmt = stmt.where(PasskeyCredential.user_id == user_id)
            return (await db.execute(stmt)).scalar_one()

    async def record_use(self, credential_id: bytes, new_sign_count: int, user_agent: Optional[str] = None) -> bool:
        """
        Compare-and-set of the counter and usage metadata. The WHERE clause
        repeats the counter rule, so of two concurrent assertions carrying the
        same counter only one can update the row. Returns False when nothing
        was updated.
        """
        if new_sign_count == 0:
            counter_ok = PasskeyCredential.sign_count == 0
        else:
            counter_ok = PasskeyCredential.sign_count < new_sign_count
        stmt = (
            update(PasskeyCredential)
            .where(PasskeyCredential.id == credential_id, PasskeyCredential.is_active.is_(True), counter_ok)
            .values(sign_count=new_sign_count, last_used_at=time.time(),
                    last_user_agent=(user_agent or "")[:512] or None)
            .execution_options(synchronize_session=False)
        )
        async with self._db_manager.get_db() as db:
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount == 1

    async def _get_owned(self, db: AsyncSession, credential_id: bytes, actor: Optional[User]) -> PasskeyCredential:
        credential = await db.get(PasskeyCredential, credential_id)
        if credential is None:
            raise CredentialNotFound(f"Credential {encoding_utils.short_id(credential_id)} not found.")
        # actor None is the system itself (counter regression policy).
        if actor is not None and credential.user_id != actor.id and not actor.is_admin:
            raise OperationForbiddenError("Only the owner or an administrator can modify this passkey.")
        return credential

    async def disable(self, credential_id: bytes, actor: Optional[User], reason: str = "user_request",
                      ip_address: Optional[str] = None) -> PasskeyCredential:
        """Soft-disables a credential. It is kept for audit but excluded from ceremonies."""
        async with self._db_manager.get_db() as db:
            credential = await self._get_owned(db, credential_id, actor)
            credential.is_active = False
            await self._db_manager.log_audit_event(
                credential.user_id, "PASSKEY_DISABLED", ip_address,
                {"credential": encoding_utils.short_id(credential_id), "reason": reason,
                 "by": actor.id if actor else "system"}, db=db
            )
            await db.commit()
        logger.info(f"Passkey {encoding_utils.short_id(credential_id)} disabled ({reason})")
        await hook_manager.trigger(Events.PASSKEY_DISABLED, credential=credential, actor=actor, reason=reason)
        return credential

    async def delete(self, credential_id: bytes, actor: Optional[User], ip_address: Optional[str] = None) -> bool:
        async with self._db_manager.get_db() as db:
            credential = await self._get_owned(db, credential_id, actor)
            owner_id = credential.user_id
            result = await db.execute(
                delete(PasskeyCredential).where(PasskeyCredential.id == credential_id)
                .execution_options(synchronize_session=False)
            )
            await self._db_manager.log_audit_event(
                owner_id, "PASSKEY_DELETED", ip_address,
                {"credential": encoding_utils.short_id(credential_id), "by": actor.id if actor else "system"}, db=db
            )
            await db.commit()
        logger.info(f"Passkey {encoding_utils.short_id(credential_id)} deleted")
        await hook_manager.trigger(Events.PASSKEY_DELETED, credential_id=credential_id, owner_id=owner_id, actor=actor)
        return result.rowcount > 0


class PasskeyManager:
    """Runs passkey ceremonies end to end: challenge issuance, verification, audit."""

    def __init__(self, db_manager: DatabaseManager, users: UserManager, credentials: CredentialStore,
                 counter_policy: CounterPolicy = None):
        self._db_manager = db_manager
        self.users = users
        self.credentials = credentials
        self.challenges = ChallengeRegistry(db_manager)
        self.verifier = CeremonyVerifier(db_manager, credentials, users, counter_policy)

    async def begin_registration(self, user: Optional[User], rp: RelyingParty,
                                 user_agent: Optional[str]) -> Tuple[str, Dict[str, Any]]:
        if user is None:
            raise Unauthenticated("Passkey registration requires a logged in user.")
        existing = await self.credentials.list_active_for_owner(user.id)
        return await self.challenges.issue_registration(
            user, [c.id for c in existing], user_agent_fingerprint(user_agent), rp
        )

    async def finish_registration(self, user: Optional[User], payload: Union[RegistrationPayload, Dict[str, Any]],
                                  challenge_ref: Optional[str], ctx: CeremonyContext) -> PasskeyCredential:
        if user is None:
            raise Unauthenticated("Passkey registration requires a logged in user.")
        try:
            bound = await self.challenges.consume(
                challenge_ref, PURPOSE_REGISTRATION, user_agent_fingerprint(ctx.user_agent), user_id=user.id
            )
            credential = await self.verifier.verify_registration(user, payload, bound, ctx)
        except CeremonyError as e:
            await self._record_failure("PASSKEY_REGISTRATION_FAILED", user.id, e, ctx)
            raise
        await self._db_manager.log_audit_event(
            user.id, "PASSKEY_REGISTERED", ctx.ip_address,
            {"credential": encoding_utils.short_id(credential.id), "fmt": credential.attestation_format,
             "rp_id": ctx.rp.id}
        )
        await hook_manager.trigger(Events.PASSKEY_REGISTERED, user=user, credential=credential, context=ctx)
        return credential

    async def begin_authentication(self, rp: RelyingParty, user_agent: Optional[str],
                                   discoverable: Optional[bool] = None) -> Tuple[str, Dict[str, Any]]:
        """
        Raises NoCredentialsRegistered, before any challenge is created, when the
        store holds no active credential at all.
        """
        discoverable = settings.PASSKEY_DISCOVERABLE_LOGIN if discoverable is None else discoverable
        if await self.credentials.count_active() == 0:
            raise NoCredentialsRegistered("No active passkeys are registered.")
        allow_ids = [] if discoverable else await self.credentials.list_all_active_ids()
        return await self.challenges.issue_authentication(allow_ids, user_agent_fingerprint(user_agent), rp)

    async def finish_authentication(self, payload: Union[AuthenticationPayload, Dict[str, Any]],
                                    challenge_ref: Optional[str],
                                    ctx: CeremonyContext) -> Tuple[User, PasskeyCredential]:
        try:
            bound = await self.challenges.consume(
                challenge_ref, PURPOSE_AUTHENTICATION, user_agent_fingerprint(ctx.user_agent)
            )
            user, credential = await self.verifier.verify_authentication(payload, bound, ctx)
        except CeremonyError as e:
            await self._record_failure("PASSKEY_LOGIN_FAILED", None, e, ctx)
            raise
        await self._db_manager.log_audit_event(
            user.id, "PASSKEY_LOGIN_SUCCESS", ctx.ip_address,
            {"credential": encoding_utils.short_id(credential.id), "rp_id": ctx.rp.id}
        )
        await hook_manager.trigger(Events.PASSKEY_AUTHENTICATED, user=user, credential=credential, context=ctx)
        return user, credential

    async def _record_failure(self, event_type: str, user_id: Optional[str], error: CeremonyError,
                              ctx: CeremonyContext):
        logger.warning(f"{event_type} ({error.kind}) rp={ctx.rp.id} ip={ctx.ip_address}: {error}")
        await self._db_manager.log_audit_event(
            user_id, event_type, ctx.ip_address, {"reason": error.kind, "rp_id": ctx.rp.id}
        )
        await hook_manager.trigger(Events.PASSKEY_CEREMONY_FAILED, error=error, user_id=user_id, context=ctx)


class AuditManager:
    """Manages querying the audit trail for security and administrative purposes."""

    def __init__(self, db_manager: DatabaseManager):
        self._db_manager = db_manager

    async def get_events_for_user(self, user_id: str, skip: int = 0, limit: int = 25) -> List[AuditEvent]:
        async with self._db_manager.get_db() as db:
            stmt = select(AuditEvent).where(AuditEvent.user_id == user_id).order_by(
                desc(AuditEvent.timestamp), desc(AuditEvent.id)).offset(skip).limit(limit)
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_events_by_type(self, event_type: str, skip: int = 0, limit: int = 100) -> List[AuditEvent]:
        async with self._db_manager.get_db() as db:
            stmt = select(AuditEvent).where(AuditEvent.event_type == event_type).order_by(
                desc(AuditEvent.timestamp), desc(AuditEvent.id)).offset(skip).limit(limit)
            result = await db.execute(stmt)
            return list(result.scalars().all())


class PassGateAsync:
    """High-level facade for passkey ceremonies and credential management."""

    def __init__(self, db_manager: DatabaseManager, counter_policy: CounterPolicy = None):
        self.db_manager = db_manager
        self.users = UserManager(db_manager)
        self.credentials = CredentialStore(db_manager)
        self.audit = AuditManager(db_manager)
        self.passkeys = PasskeyManager(db_manager, self.users, self.credentials, counter_policy)

    async def purge_expired_challenges(self) -> int:
        return await self.passkeys.challenges.purge_expired()

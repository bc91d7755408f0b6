"""
Database models and async database manager for PassGate.

This module defines the SQLAlchemy ORM models (User, PasskeyCredential, PasskeyChallenge, AuditEvent) and provides the async database engine and session manager. Only SQLite (aiosqlite) and PostgreSQL (asyncpg) are supported. Uniqueness of credential ids and single use of challenges are enforced by the database, not by application-level checks.
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import Column, event, ForeignKey, AsyncAdaptedQueuePool, LargeBinary
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator, TEXT, String, Text, Boolean, Integer, Float

from passgate.core.config import settings
from passgate.core.encoding import encoding_utils

logger = logging.getLogger(__name__)

# --- Base Model ---
Base = declarative_base()

# --- Async Engine Setup ---
# sqlite:/// URIs are upgraded to the aiosqlite driver.
db_uri = settings.DEFAULT_DATABASE_URI
if 'sqlite' in db_uri and 'aiosqlite' not in db_uri:
    db_uri = db_uri.replace('sqlite:///', 'sqlite+aiosqlite:///')

engine = create_async_engine(
    db_uri,
    connect_args={'check_same_thread': False} if 'sqlite' in db_uri else {},
    poolclass=AsyncAdaptedQueuePool,
    pool_size=settings.DATABASE_POOL_SIZE,
    max_overflow=settings.DATABASE_MAX_OVERFLOW,
    pool_timeout=settings.DATABASE_POOL_TIMEOUT,
    pool_recycle=settings.DATABASE_POOL_RECYCLE,
    pool_pre_ping=settings.DATABASE_POOL_PRE_PING,
)

# --- SQLite PRAGMA Configuration ---
if engine.dialect.name == 'sqlite':
    @event.listens_for(Engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        """Enforces foreign key constraints for SQLite."""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# --- Custom Column Types ---

class JsonType(TypeDecorator):
    """
    Stores a Python list/dict as JSON. Uses native JSONB on PostgreSQL, TEXT on SQLite.
    """
    impl = TEXT
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(Text)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == 'postgresql':
            return value
        return json.dumps(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if dialect.name == 'postgresql':
            return value
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return {}
        return value


# --- ORM Models ---

class User(Base):
    """
    Local mirror of a subject owned by the host identity system.
    The ceremony code only relies on the stable id and the derived user handle.
    """
    __tablename__ = 'users'

    id = Column(String(64), primary_key=True, index=True)
    username = Column(String(120), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=True)
    display_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(Float, nullable=False, default=time.time)

    passkey_credentials = relationship("PasskeyCredential", back_populates="user", cascade="all, delete-orphan")
    audit_events = relationship("AuditEvent", back_populates="user")

    @property
    def user_handle(self) -> bytes:
        return encoding_utils.user_handle(self.id)

    def get_display_name(self) -> str:
        return self.display_name or self.username

    def __repr__(self):
        return f"<User {self.username}>"


class PasskeyCredential(Base):
    __tablename__ = 'passkey_credentials'

    # Primary key doubles as the global uniqueness constraint on credential ids.
    id = Column(LargeBinary(1023), primary_key=True)
    user_id = Column(String(64), ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    public_key = Column(LargeBinary, nullable=False)
    sign_count = Column(Integer, default=0, nullable=False)
    aaguid = Column(LargeBinary(16), nullable=True)
    attestation_format = Column(String(32), nullable=False, default="none")
    transports = Column(JsonType, nullable=True, default=list)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(Float, nullable=False, default=time.time)
    last_used_at = Column(Float, nullable=True)
    last_user_agent = Column(String(512), nullable=True)
    user = relationship("User", back_populates="passkey_credentials")

    def __repr__(self):
        return f"<PasskeyCredential {encoding_utils.short_id(self.id)} (User: {self.user_id})>"


class PasskeyChallenge(Base):
    """
    One in-flight ceremony. Rows are deleted on consumption, whatever the outcome.
    """
    __tablename__ = 'passkey_challenges'

    id = Column(String(64), primary_key=True)
    value = Column(LargeBinary(255), nullable=False)
    purpose = Column(String(20), nullable=False)
    user_id = Column(String(64), nullable=True)
    fingerprint = Column(String(64), nullable=False)
    rp_id = Column(String(255), nullable=False)
    created_at = Column(Float, nullable=False, default=time.time)
    expires_at = Column(Float, nullable=False, index=True)

    def is_expired(self, now: float = None) -> bool:
        return (now or time.time()) > self.expires_at


class AuditEvent(Base):
    __tablename__ = 'audit_events'
    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), ForeignKey('users.id', ondelete="SET NULL"), nullable=True, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    timestamp = Column(Float, nullable=False, default=time.time)
    ip_address = Column(String(45), nullable=True)
    details = Column(JsonType, nullable=True)
    user = relationship('User', back_populates='audit_events')


class DatabaseManager:
    """
    Manages async database connections and sessions for PassGate.
    Only supports SQLite (aiosqlite) and PostgreSQL (asyncpg).
    Handles auto-creation of tables and audit event logging.
    """
    AsyncSessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    def __init__(self):
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize_database(self):
        """
        Creates tables if they don't exist.
        """
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True

    @asynccontextmanager
    async def get_context_manager_db(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Provides an async database session as a context manager.
        Ensures tables are created if AUTO_CREATE_DATABASE is enabled.
        """
        if settings.AUTO_CREATE_DATABASE and not self._initialized:
            async with self._init_lock:
                if not self._initialized:
                    await self.initialize_database()
        async with self.AsyncSessionLocal() as session:
            yield session

    def get_db(self):
        """
        Returns an async context manager for a database session.
        Usage: async with db_manager.get_db() as db:
        """
        return self.get_context_manager_db()

    async def log_audit_event(self, user_id: str, event_type: str, ip_address: str = None, details: dict = None,
                              db: AsyncSession = None):
        """
        Asynchronously logs an audit event in the database.
        If db is provided, adds to that session (the caller commits); otherwise, creates a new session.
        """
        audit_event = AuditEvent(
            user_id=user_id,
            event_type=event_type,
            ip_address=ip_address,
            details=details or {}
        )
        if db:
            db.add(audit_event)
            return audit_event

        async with self.get_db() as session:
            session.add(audit_event)
            await session.commit()
            return audit_event


db_manager = DatabaseManager()

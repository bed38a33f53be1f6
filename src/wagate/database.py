"""
Relational store for tenants: users, their API keys and WhatsApp instances.

Table names follow the Laravel dashboard that shares this database, so an
existing `db_waapi` schema can be used as-is by pointing DATABASE_URL at it.
"""

import secrets
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import bcrypt
from sqlalchemy import Column, DateTime, func
from sqlmodel import Field, Session, SQLModel, create_engine, select

from wagate.logger import get_logger

logger = get_logger(__name__)

API_KEY_PREFIXES = ("wapi_", "wa_")
KEY_PREFIX_LENGTH = 8


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns stored timestamps without their zone; they are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _timestamp(nullable: bool = False):
    return Column(DateTime(timezone=True), nullable=nullable)


# ─── Tables ──────────────────────────────────────────────────────────


class UserModel(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=_now, sa_column=_timestamp())


class ApiKeyModel(SQLModel, table=True):
    __tablename__ = "api_keys"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    name: str = ""
    key_prefix: str = Field(index=True)
    key: str  # bcrypt hash of the full key
    is_active: bool = True
    expires_at: Optional[datetime] = Field(default=None, sa_column=_timestamp(True))
    usage_limit: Optional[int] = None
    usage_count: int = 0
    last_used_at: Optional[datetime] = Field(default=None, sa_column=_timestamp(True))
    created_at: datetime = Field(default_factory=_now, sa_column=_timestamp())

    @property
    def is_expired(self) -> bool:
        expires_at = _as_utc(self.expires_at)
        return expires_at is not None and expires_at < _now()

    @property
    def limit_reached(self) -> bool:
        return bool(self.usage_limit) and self.usage_count >= self.usage_limit


class InstanceModel(SQLModel, table=True):
    __tablename__ = "whats_app_instances"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    instance_id: str = Field(index=True)
    name: str = ""
    status: str = "disconnected"
    created_at: datetime = Field(default_factory=_now, sa_column=_timestamp())
    updated_at: datetime = Field(default_factory=_now, sa_column=_timestamp())


# ─── Key hashing ─────────────────────────────────────────────────────


def hash_api_key(api_key: str) -> str:
    return bcrypt.hashpw(api_key.encode(), bcrypt.gensalt()).decode()


def verify_api_key(api_key: str, hashed: str) -> bool:
    """
    Check a plaintext key against its bcrypt hash.

    PHP writes `$2y$` hashes; they are identical to `$2b$` apart from the tag.
    """
    if hashed.startswith("$2y$"):
        hashed = "$2b$" + hashed[4:]
    try:
        return bcrypt.checkpw(api_key.encode(), hashed.encode())
    except ValueError:
        logger.warning("Stored API key hash is malformed")
        return False


def generate_api_key() -> str:
    return "wapi_" + secrets.token_urlsafe(32)


# ─── Database ────────────────────────────────────────────────────────


class GatewayDatabase:
    """Thin query layer over the tenant tables."""

    def __init__(self, url: str):
        self.url = url
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        if url.startswith("sqlite:///"):
            Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(url, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self.engine, expire_on_commit=False) as session:
            yield session

    # -- users --

    def create_user(self, name: str, email: str) -> UserModel:
        with self._session() as session:
            user = UserModel(name=name, email=email)
            session.add(user)
            session.commit()
            session.refresh(user)
            logger.info(f"Created user {user.id} <{email}>")
            return user

    def get_user(self, user_id: int) -> Optional[UserModel]:
        with self._session() as session:
            return session.get(UserModel, user_id)

    def list_users(self) -> list[UserModel]:
        with self._session() as session:
            return list(session.exec(select(UserModel).order_by(UserModel.id)).all())

    # -- api keys --

    def create_api_key(
        self,
        user_id: int,
        name: str = "",
        expires_at: Optional[datetime] = None,
        usage_limit: Optional[int] = None,
    ) -> tuple[ApiKeyModel, str]:
        """
        Issue a new API key.

        Returns:
            The stored record and the plaintext key. The plaintext is not
            stored and cannot be recovered later.
        """
        if self.get_user(user_id) is None:
            raise ValueError(f"User {user_id} not found")

        plaintext = generate_api_key()
        record = ApiKeyModel(
            user_id=user_id,
            name=name,
            key_prefix=plaintext[:KEY_PREFIX_LENGTH],
            key=hash_api_key(plaintext),
            expires_at=expires_at,
            usage_limit=usage_limit,
        )
        with self._session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
        logger.info(f"Issued API key {record.id} for user {user_id}")
        return record, plaintext

    def find_api_keys_by_prefix(self, key_prefix: str) -> list[ApiKeyModel]:
        with self._session() as session:
            stmt = select(ApiKeyModel).where(
                ApiKeyModel.key_prefix == key_prefix,
                ApiKeyModel.is_active == True,  # noqa: E712
            )
            return list(session.exec(stmt).all())

    def list_api_keys(self, user_id: Optional[int] = None) -> list[ApiKeyModel]:
        with self._session() as session:
            stmt = select(ApiKeyModel).order_by(ApiKeyModel.id)
            if user_id is not None:
                stmt = stmt.where(ApiKeyModel.user_id == user_id)
            return list(session.exec(stmt).all())

    def record_api_key_usage(self, key_id: int) -> None:
        with self._session() as session:
            record = session.get(ApiKeyModel, key_id)
            if record is None:
                return
            record.usage_count = (record.usage_count or 0) + 1
            record.last_used_at = _now()
            session.add(record)
            session.commit()

    def revoke_api_key(self, key_id: int) -> bool:
        with self._session() as session:
            record = session.get(ApiKeyModel, key_id)
            if record is None:
                return False
            record.is_active = False
            session.add(record)
            session.commit()
            logger.info(f"Revoked API key {key_id}")
            return True

    # -- instances --

    def create_instance(
        self, user_id: int, instance_id: str, name: str = "", status: str = "disconnected"
    ) -> InstanceModel:
        with self._session() as session:
            instance = InstanceModel(
                user_id=user_id, instance_id=instance_id, name=name or instance_id, status=status
            )
            session.add(instance)
            session.commit()
            session.refresh(instance)
            return instance

    def list_user_instances(
        self, user_id: int, connected_only: bool = True
    ) -> list[InstanceModel]:
        """A user's instances, most recently updated first."""
        with self._session() as session:
            stmt = select(InstanceModel).where(InstanceModel.user_id == user_id)
            if connected_only:
                stmt = stmt.where(InstanceModel.status == "connected")
            stmt = stmt.order_by(InstanceModel.updated_at.desc(), InstanceModel.id.desc())
            return list(session.exec(stmt).all())

    def list_instances(self) -> list[InstanceModel]:
        with self._session() as session:
            return list(session.exec(select(InstanceModel).order_by(InstanceModel.id)).all())

    def set_instance_status(
        self, instance_id: str, status: str, user_id: Optional[int] = None
    ) -> int:
        """Update the status of every row for an instance; returns rows changed."""
        with self._session() as session:
            stmt = select(InstanceModel).where(InstanceModel.instance_id == instance_id)
            if user_id is not None:
                stmt = stmt.where(InstanceModel.user_id == user_id)
            rows = session.exec(stmt).all()
            for row in rows:
                row.status = status
                row.updated_at = _now()
                session.add(row)
            session.commit()
            return len(rows)

    def count_instances(self) -> int:
        with self._session() as session:
            return session.exec(select(func.count()).select_from(InstanceModel)).one()


_database: Optional[GatewayDatabase] = None


def get_database() -> GatewayDatabase:
    """Process-wide database, created from CONFIG on first use."""
    global _database
    if _database is None:
        from wagate.config import CONFIG

        _database = GatewayDatabase(CONFIG.database_url)
    return _database


def set_database(database: Optional[GatewayDatabase]) -> None:
    """Replace the process-wide database (tests, alternate URLs)."""
    global _database
    _database = database

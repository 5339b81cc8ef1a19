"""Persistence for coaching users and call logs.

``CallStore`` is the interface the bridge, the scheduler and the HTTP
routes depend on.  ``SqlCallStore`` keeps data in any SQLAlchemy database
(``DATABASE_URL``); ``MemoryCallStore`` keeps it in process and is used
when no database is configured.  Both return the same pydantic records.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from callbridge.config import Settings

log = logging.getLogger("callbridge.storage")

LEVELS = ("A0", "A1", "A2", "B1")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Records ───────────────────────────────────────────────────────


class CoachUser(BaseModel):
    """A learner who receives daily practice calls."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    phone_e164: str
    name: Optional[str] = None
    timezone: str = "America/Phoenix"
    preferred_call_hour_local: int = 9
    preferred_call_minute_local: int = 0
    level_estimate: str = "A0"
    duolingo_unit: Optional[int] = None
    call_prompt: Optional[str] = None
    call_instructions: Optional[str] = None
    is_active: bool = True
    last_called_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    ensure_utc = field_validator("last_called_at", "created_at", "updated_at")(_as_utc)


class CallLog(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: Optional[str] = None
    call_sid: str
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    outcome: Optional[str] = None
    summary: Optional[str] = None
    metrics_json: Optional[str] = None

    ensure_utc = field_validator("started_at", "ended_at")(_as_utc)


USER_FIELDS = frozenset(CoachUser.model_fields) - {"id", "phone_e164", "created_at", "updated_at"}
CALL_LOG_FIELDS = frozenset({"started_at", "ended_at", "outcome", "summary", "metrics_json"})


# ── Interface ─────────────────────────────────────────────────────


class CallStore(ABC):
    """Async storage interface for users and call logs."""

    async def initialize(self) -> None:
        """Create tables or other backing resources."""

    @abstractmethod
    async def upsert_user(self, phone_e164: str, **fields: Any) -> CoachUser:
        """Create the user for ``phone_e164`` or update the given fields."""

    @abstractmethod
    async def get_user_by_id(self, user_id: str) -> Optional[CoachUser]: ...

    @abstractmethod
    async def get_user_by_phone(self, phone_e164: str) -> Optional[CoachUser]: ...

    @abstractmethod
    async def list_users(self) -> list[CoachUser]: ...

    @abstractmethod
    async def list_active_users(self) -> list[CoachUser]: ...

    @abstractmethod
    async def set_user_inactive(self, phone_e164: str) -> bool: ...

    @abstractmethod
    async def set_user_inactive_by_id(self, user_id: str) -> bool: ...

    @abstractmethod
    async def update_last_called(self, user_id: str, when: datetime) -> None: ...

    @abstractmethod
    async def update_user_level(self, user_id: str, level: str) -> None: ...

    @abstractmethod
    async def create_call_log(
        self,
        call_sid: str,
        user_id: Optional[str] = None,
        outcome: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> CallLog: ...

    @abstractmethod
    async def update_call_log_by_sid(self, call_sid: str, **fields: Any) -> Optional[CallLog]:
        """Update the named call-log fields.  Returns None for an unknown sid."""

    @abstractmethod
    async def get_call_log_by_sid(self, call_sid: str) -> Optional[CallLog]: ...


def _check_fields(fields: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")


def _check_level(level: str) -> None:
    if level not in LEVELS:
        raise ValueError(f"Unknown level {level!r}")


# ── In-memory implementation ──────────────────────────────────────


class MemoryCallStore(CallStore):
    """Process-local store; contents are lost on restart."""

    def __init__(self) -> None:
        self._users: dict[str, CoachUser] = {}
        self._logs: dict[str, CallLog] = {}
        self._next_log_id = 1

    async def upsert_user(self, phone_e164: str, **fields: Any) -> CoachUser:
        _check_fields(fields, USER_FIELDS)
        now = _utcnow()
        existing = await self.get_user_by_phone(phone_e164)
        if existing is None:
            user = CoachUser(
                id=str(uuid.uuid4()),
                phone_e164=phone_e164,
                created_at=now,
                updated_at=now,
                **fields,
            )
        else:
            user = existing.model_copy(update={**fields, "updated_at": now})
        self._users[user.id] = user
        return user

    async def get_user_by_id(self, user_id: str) -> Optional[CoachUser]:
        return self._users.get(user_id)

    async def get_user_by_phone(self, phone_e164: str) -> Optional[CoachUser]:
        return next((u for u in self._users.values() if u.phone_e164 == phone_e164), None)

    async def list_users(self) -> list[CoachUser]:
        return sorted(self._users.values(), key=lambda u: u.created_at)

    async def list_active_users(self) -> list[CoachUser]:
        return [u for u in await self.list_users() if u.is_active]

    def _update_user(self, user: Optional[CoachUser], **changes: Any) -> bool:
        if user is None:
            return False
        self._users[user.id] = user.model_copy(update={**changes, "updated_at": _utcnow()})
        return True

    async def set_user_inactive(self, phone_e164: str) -> bool:
        return self._update_user(await self.get_user_by_phone(phone_e164), is_active=False)

    async def set_user_inactive_by_id(self, user_id: str) -> bool:
        return self._update_user(self._users.get(user_id), is_active=False)

    async def update_last_called(self, user_id: str, when: datetime) -> None:
        self._update_user(self._users.get(user_id), last_called_at=when)

    async def update_user_level(self, user_id: str, level: str) -> None:
        _check_level(level)
        self._update_user(self._users.get(user_id), level_estimate=level)

    async def create_call_log(
        self,
        call_sid: str,
        user_id: Optional[str] = None,
        outcome: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> CallLog:
        entry = CallLog(
            id=self._next_log_id,
            user_id=user_id,
            call_sid=call_sid,
            outcome=outcome,
            started_at=started_at,
        )
        self._next_log_id += 1
        self._logs[call_sid] = entry
        return entry

    async def update_call_log_by_sid(self, call_sid: str, **fields: Any) -> Optional[CallLog]:
        _check_fields(fields, CALL_LOG_FIELDS)
        entry = self._logs.get(call_sid)
        if entry is None:
            return None
        entry = entry.model_copy(update=fields)
        self._logs[call_sid] = entry
        return entry

    async def get_call_log_by_sid(self, call_sid: str) -> Optional[CallLog]:
        return self._logs.get(call_sid)


# ── SQLAlchemy implementation ─────────────────────────────────────

Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    phone_e164 = Column(String(20), nullable=False, unique=True, index=True)
    name = Column(String(255))
    timezone = Column(String(64), nullable=False, default="America/Phoenix")
    preferred_call_hour_local = Column(Integer, nullable=False, default=9)
    preferred_call_minute_local = Column(Integer, nullable=False, default=0)
    level_estimate = Column(String(2), nullable=False, default="A0")
    duolingo_unit = Column(Integer)
    call_prompt = Column(Text)
    call_instructions = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    last_called_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class CallLogRow(Base):
    __tablename__ = "call_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id"), index=True)
    call_sid = Column(String(64), nullable=False, unique=True, index=True)
    started_at = Column(DateTime(timezone=True))
    ended_at = Column(DateTime(timezone=True))
    outcome = Column(String(32))
    summary = Column(Text)
    metrics_json = Column(Text)


class SqlCallStore(CallStore):
    """CallStore backed by a SQLAlchemy engine.

    The engine is synchronous; every operation runs in the default thread
    pool so the event loop never blocks on the database.
    """

    def __init__(self, database_url: str) -> None:
        kwargs: dict[str, Any] = {"pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
        self._engine = create_engine(database_url, **kwargs)
        self._sessions = sessionmaker(self._engine, expire_on_commit=False)

    async def _run(self, func, *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    async def initialize(self) -> None:
        await self._run(Base.metadata.create_all, self._engine)
        log.info("Call store tables ready")

    def dispose(self) -> None:
        self._engine.dispose()

    # -- users ---------------------------------------------------------

    def _upsert_user(self, phone_e164: str, fields: dict[str, Any]) -> CoachUser:
        now = _utcnow()
        with self._sessions.begin() as db:
            row = db.query(UserRow).filter_by(phone_e164=phone_e164).one_or_none()
            if row is None:
                defaults = CoachUser(id="", phone_e164=phone_e164, created_at=now, updated_at=now)
                values = defaults.model_dump(exclude={"id"})
                values.update(fields)
                row = UserRow(id=str(uuid.uuid4()), **values)
                db.add(row)
            else:
                for key, value in fields.items():
                    setattr(row, key, value)
                row.updated_at = now
            db.flush()
            return CoachUser.model_validate(row)

    async def upsert_user(self, phone_e164: str, **fields: Any) -> CoachUser:
        _check_fields(fields, USER_FIELDS)
        return await self._run(self._upsert_user, phone_e164, fields)

    def _get_user(self, **criteria: Any) -> Optional[CoachUser]:
        with self._sessions() as db:
            row = db.query(UserRow).filter_by(**criteria).one_or_none()
            return CoachUser.model_validate(row) if row else None

    async def get_user_by_id(self, user_id: str) -> Optional[CoachUser]:
        return await self._run(self._get_user, id=user_id)

    async def get_user_by_phone(self, phone_e164: str) -> Optional[CoachUser]:
        return await self._run(self._get_user, phone_e164=phone_e164)

    def _list_users(self, active_only: bool) -> list[CoachUser]:
        with self._sessions() as db:
            query = db.query(UserRow)
            if active_only:
                query = query.filter(UserRow.is_active.is_(True))
            return [CoachUser.model_validate(r) for r in query.order_by(UserRow.created_at)]

    async def list_users(self) -> list[CoachUser]:
        return await self._run(self._list_users, False)

    async def list_active_users(self) -> list[CoachUser]:
        return await self._run(self._list_users, True)

    def _update_user(self, criteria: dict[str, Any], changes: dict[str, Any]) -> bool:
        with self._sessions.begin() as db:
            row = db.query(UserRow).filter_by(**criteria).one_or_none()
            if row is None:
                return False
            for key, value in changes.items():
                setattr(row, key, value)
            row.updated_at = _utcnow()
            return True

    async def set_user_inactive(self, phone_e164: str) -> bool:
        return await self._run(self._update_user, {"phone_e164": phone_e164}, {"is_active": False})

    async def set_user_inactive_by_id(self, user_id: str) -> bool:
        return await self._run(self._update_user, {"id": user_id}, {"is_active": False})

    async def update_last_called(self, user_id: str, when: datetime) -> None:
        await self._run(self._update_user, {"id": user_id}, {"last_called_at": when})

    async def update_user_level(self, user_id: str, level: str) -> None:
        _check_level(level)
        await self._run(self._update_user, {"id": user_id}, {"level_estimate": level})

    # -- call logs -----------------------------------------------------

    def _create_call_log(self, values: dict[str, Any]) -> CallLog:
        with self._sessions.begin() as db:
            row = CallLogRow(**values)
            db.add(row)
            db.flush()
            return CallLog.model_validate(row)

    async def create_call_log(
        self,
        call_sid: str,
        user_id: Optional[str] = None,
        outcome: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> CallLog:
        return await self._run(
            self._create_call_log,
            {"call_sid": call_sid, "user_id": user_id, "outcome": outcome, "started_at": started_at},
        )

    def _update_call_log(self, call_sid: str, fields: dict[str, Any]) -> Optional[CallLog]:
        with self._sessions.begin() as db:
            row = db.query(CallLogRow).filter_by(call_sid=call_sid).one_or_none()
            if row is None:
                return None
            for key, value in fields.items():
                setattr(row, key, value)
            db.flush()
            return CallLog.model_validate(row)

    async def update_call_log_by_sid(self, call_sid: str, **fields: Any) -> Optional[CallLog]:
        _check_fields(fields, CALL_LOG_FIELDS)
        return await self._run(self._update_call_log, call_sid, fields)

    def _get_call_log(self, call_sid: str) -> Optional[CallLog]:
        with self._sessions() as db:
            row = db.query(CallLogRow).filter_by(call_sid=call_sid).one_or_none()
            return CallLog.model_validate(row) if row else None

    async def get_call_log_by_sid(self, call_sid: str) -> Optional[CallLog]:
        return await self._run(self._get_call_log, call_sid)


async def create_store(settings: Settings) -> CallStore:
    """SQL store when ``DATABASE_URL`` is set and reachable, memory otherwise."""
    if settings.database_url:
        try:
            store = SqlCallStore(settings.database_url)
            await store.initialize()
            log.info("Using SQL call store")
            return store
        except (SQLAlchemyError, ImportError) as exc:
            log.warning("Database unavailable (%s); falling back to in-memory store", exc)
    else:
        log.info("DATABASE_URL not set; using in-memory call store")
    return MemoryCallStore()

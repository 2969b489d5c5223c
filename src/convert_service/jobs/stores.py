"""Job store implementations.

``MemoryJobStore`` keeps records in-process and is the default for a single
instance. ``SqlJobStore`` persists jobs through SQLAlchemy so several service
instances can share state; each mutation is one row transaction.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from sqlalchemy import (
    BigInteger,
    Boolean,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    event,
    func,
    select,
    update,
)
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .errors import JobNotFound, StoreUnavailable
from .interfaces import JobStore
from .records import JobRecord, JobState, Scalar, predecessors

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 255


def _check_target(state: str) -> None:
    if state == JobState.ERROR:
        raise ValueError("use update_error to move a job into the error state")
    predecessors(state)


def _check_keys(*keys: str) -> None:
    for key in keys:
        if len(key) > MAX_KEY_LENGTH:
            raise ValueError(f"key longer than {MAX_KEY_LENGTH} characters: {key[:40]!r}...")


class MemoryJobStore:
    """In-process job store.

    Each id has its own lock, so writers on distinct jobs never contend.
    Readers take no lock: records are immutable and replaced wholesale.
    """

    def __init__(self) -> None:
        self._records: dict[str, JobRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def put(self, job_id: str, record: JobRecord) -> None:
        _check_keys(*record.settings, *record.custom_values, *record.custom_data)
        with self._registry_lock:
            if job_id in self._records:
                raise ValueError(f"duplicate job id: {job_id}")
            self._locks[job_id] = threading.Lock()
            self._records[job_id] = record

    def get(self, job_id: str) -> JobRecord:
        record = self._records.get(job_id)
        if record is None:
            raise JobNotFound(job_id)
        return record

    @contextmanager
    def _locked(self, job_id: str) -> Iterator[JobRecord | None]:
        lock = self._locks.get(job_id)
        if lock is None:
            yield None
            return
        with lock:
            yield self._records.get(job_id)

    def update_state(self, job_id: str, state: str) -> bool:
        _check_target(state)
        with self._locked(job_id) as record:
            if record is None or record.state not in predecessors(state):
                return False
            self._records[job_id] = record.with_state(state)
            return True

    def update_error(self, job_id: str, code: int, message: str | None) -> bool:
        with self._locked(job_id) as record:
            if record is None or record.state not in predecessors(JobState.ERROR):
                return False
            self._records[job_id] = record.with_error(code, message)
            return True

    def set_custom_value(self, job_id: str, key: str, value: Scalar) -> None:
        _check_keys(key)
        with self._locked(job_id) as record:
            if record is not None:
                self._records[job_id] = record.with_custom_value(key, value)

    def remove_older_than(self, cutoff: datetime) -> int:
        removed = 0
        with self._registry_lock:
            stale = [job_id for job_id, rec in self._records.items() if rec.created_at < cutoff]
            for job_id in stale:
                with self._locks[job_id]:
                    del self._records[job_id]
                del self._locks[job_id]
                removed += 1
        return removed

    def close(self) -> None:
        with self._registry_lock:
            self._records.clear()
            self._locks.clear()

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# Relational store
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


class ConversionRow(Base):
    __tablename__ = "conversions"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True)
    callback_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_alive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(10), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(5), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class SettingRow(Base):
    __tablename__ = "settings"

    uuid: Mapped[str] = mapped_column(
        ForeignKey("conversions.uuid", ondelete="CASCADE"), primary_key=True
    )
    map_key: Mapped[str] = mapped_column(String(MAX_KEY_LENGTH), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


class CustomValueRow(Base):
    __tablename__ = "custom_values"

    uuid: Mapped[str] = mapped_column(
        ForeignKey("conversions.uuid", ondelete="CASCADE"), primary_key=True
    )
    map_key: Mapped[str] = mapped_column(String(MAX_KEY_LENGTH), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)  # JSON scalar


class CustomDataRow(Base):
    __tablename__ = "custom_data"

    uuid: Mapped[str] = mapped_column(
        ForeignKey("conversions.uuid", ondelete="CASCADE"), primary_key=True
    )
    map_key: Mapped[str] = mapped_column(String(MAX_KEY_LENGTH), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)  # JSON


def _to_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _configure_sqlite(engine: Any) -> None:
    # pysqlite defers BEGIN until the first write, which lets two transactions
    # read the same row and then deadlock on upgrade. Take the write lock up
    # front and turn on foreign keys so child rows cascade.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


class SqlJobStore:
    """Job store backed by a relational database.

    Layout: one ``conversions`` row per job plus ``settings``,
    ``custom_values`` and ``custom_data`` key/value tables that cascade with
    it. State transitions are conditional updates, so they stay monotonic
    even with several instances writing.
    """

    def __init__(self, database_url: str, **engine_options: Any) -> None:
        if database_url.startswith("sqlite"):
            connect_args = engine_options.setdefault("connect_args", {})
            connect_args.setdefault("check_same_thread", False)
            connect_args.setdefault("timeout", 30)
        self._engine = create_engine(database_url, pool_pre_ping=True, **engine_options)
        if self._engine.dialect.name == "sqlite":
            _configure_sqlite(self._engine)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        try:
            Base.metadata.create_all(self._engine)
        except DBAPIError as exc:
            raise StoreUnavailable(f"Failed to initialise database: {exc}") from exc

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._sessions.begin() as session:
                yield session
        except IntegrityError:
            raise
        except DBAPIError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def put(self, job_id: str, record: JobRecord) -> None:
        _check_keys(*record.settings, *record.custom_values, *record.custom_data)
        try:
            with self._transaction() as session:
                session.add(
                    ConversionRow(
                        uuid=job_id,
                        callback_url=record.callback_url,
                        is_alive=record.alive,
                        created_ms=_to_ms(record.created_at),
                        state=record.state,
                        error_code=None if record.error_code is None else str(record.error_code),
                        error_message=record.error_message,
                    )
                )
                # parent row must exist before the key/value rows reference it
                session.flush()
                session.add_all(
                    SettingRow(uuid=job_id, map_key=key, value=str(value))
                    for key, value in record.settings.items()
                )
                session.add_all(
                    CustomDataRow(uuid=job_id, map_key=key, value=json.dumps(value))
                    for key, value in record.custom_data.items()
                )
                session.add_all(
                    CustomValueRow(uuid=job_id, map_key=key, position=pos, value=json.dumps(value))
                    for pos, (key, value) in enumerate(record.custom_values.items())
                )
        except IntegrityError as exc:
            raise ValueError(f"duplicate job id: {job_id}") from exc

    def get(self, job_id: str) -> JobRecord:
        with self._transaction() as session:
            row = session.get(ConversionRow, job_id)
            if row is None:
                raise JobNotFound(job_id)
            settings = session.execute(
                select(SettingRow.map_key, SettingRow.value).where(SettingRow.uuid == job_id)
            ).all()
            custom_values = session.execute(
                select(CustomValueRow.map_key, CustomValueRow.value)
                .where(CustomValueRow.uuid == job_id)
                .order_by(CustomValueRow.position, CustomValueRow.map_key)
            ).all()
            custom_data = session.execute(
                select(CustomDataRow.map_key, CustomDataRow.value).where(CustomDataRow.uuid == job_id)
            ).all()
            return JobRecord(
                id=row.uuid,
                state=row.state,
                created_at=_from_ms(row.created_ms),
                error_code=None if row.error_code is None else int(row.error_code),
                error_message=row.error_message,
                custom_values={key: json.loads(value) for key, value in custom_values},
                settings=dict(settings),
                custom_data={key: json.loads(value) for key, value in custom_data},
                callback_url=row.callback_url,
            )

    def update_state(self, job_id: str, state: str) -> bool:
        _check_target(state)
        with self._transaction() as session:
            result = session.execute(
                update(ConversionRow)
                .where(ConversionRow.uuid == job_id, ConversionRow.state.in_(predecessors(state)))
                .values(state=state, is_alive=state in JobState.ALIVE)
            )
            return result.rowcount == 1

    def update_error(self, job_id: str, code: int, message: str | None) -> bool:
        with self._transaction() as session:
            result = session.execute(
                update(ConversionRow)
                .where(
                    ConversionRow.uuid == job_id,
                    ConversionRow.state.in_(predecessors(JobState.ERROR)),
                )
                .values(
                    state=JobState.ERROR,
                    is_alive=False,
                    error_code=str(int(code)),
                    error_message=message or "",
                )
            )
            return result.rowcount == 1

    def set_custom_value(self, job_id: str, key: str, value: Scalar) -> None:
        _check_keys(key)
        encoded = json.dumps(value)
        # a concurrent first write of the same key loses the insert race and
        # is retried as an update
        for attempt in range(2):
            try:
                with self._transaction() as session:
                    existing = session.get(CustomValueRow, (job_id, key))
                    if existing is not None:
                        existing.value = encoded
                        return
                    if session.get(ConversionRow, job_id) is None:
                        return
                    position = session.scalar(
                        select(func.count()).select_from(CustomValueRow).where(CustomValueRow.uuid == job_id)
                    )
                    session.add(CustomValueRow(uuid=job_id, map_key=key, position=position or 0, value=encoded))
                return
            except IntegrityError:
                if attempt:
                    raise
                logger.debug("Retrying custom value %s for job %s after insert race", key, job_id)

    def remove_older_than(self, cutoff: datetime) -> int:
        with self._transaction() as session:
            result = session.execute(
                delete(ConversionRow).where(ConversionRow.created_ms < _to_ms(cutoff))
            )
            return result.rowcount or 0

    def close(self) -> None:
        self._engine.dispose()


def create_job_store(database_url: str | None) -> JobStore:
    """Return a relational store for ``database_url``, or an in-memory one."""
    if database_url:
        logger.info("Using relational job store (%s)", database_url.split("://", 1)[0])
        return SqlJobStore(database_url)
    logger.info("No database configured, falling back to in-memory job store")
    return MemoryJobStore()

"""
SQLAlchemy-backed delta store.

Tables mirror the Alembic migration: ``scenarios`` carries the tree
pointer, ``scenario_deltas`` holds one row per
(scenario_id, entity_type, entity_id).
"""

import hashlib
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Iterator, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    delete,
    select,
    text,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .errors import Conflict, InvalidDelta, StoreUnavailable, UnknownScenario
from .models import (
    AddDelta,
    DeltaChange,
    DeltaOperation,
    DeltaRecord,
    EntityType,
    OverrideDelta,
    RemoveDelta,
    Scenario,
    ScenarioStatus,
    ScenarioType,
)
from .store import (
    ChainVersion,
    DeltaStore,
    check_expected_version,
    stale_records_conflict,
)

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class Base(DeclarativeBase):
    pass


class ScenarioRow(Base):
    __tablename__ = "scenarios"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    scenario_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    parent_scenario_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("scenarios.id"), nullable=True, index=True
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class DeltaRow(Base):
    __tablename__ = "scenario_deltas"
    __table_args__ = (
        UniqueConstraint(
            "scenario_id", "entity_type", "entity_id",
            name="uq_scenario_deltas_entity",
        ),
        CheckConstraint(
            "operation IN ('add', 'override', 'remove')",
            name="ck_scenario_deltas_operation",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scenario_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("scenarios.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def create_schema(engine: Engine) -> None:
    """Create tables directly (tests and local SQLite runs)."""
    Base.metadata.create_all(engine)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_change(operation: str, payload: Optional[dict[str, Any]]) -> DeltaChange:
    op = DeltaOperation(operation)
    if op == DeltaOperation.REMOVE:
        return RemoveDelta()
    if op == DeltaOperation.ADD:
        return AddDelta(payload=payload or {})
    return OverrideDelta(payload=payload or {})


def _to_record(row: DeltaRow) -> DeltaRecord:
    return DeltaRecord(
        scenario_id=row.scenario_id,
        entity_type=EntityType(row.entity_type),
        entity_id=row.entity_id,
        change=_to_change(row.operation, row.payload),
        updated_at=_as_utc(row.updated_at),
    )


def _to_scenario(row: ScenarioRow) -> Scenario:
    return Scenario(
        id=row.id,
        name=row.name,
        scenario_type=ScenarioType(row.scenario_type),
        status=ScenarioStatus(row.status),
        parent_scenario_id=row.parent_scenario_id,
        description=row.description,
        created_at=_as_utc(row.created_at) if row.created_at else None,
    )


class SqlDeltaStore(DeltaStore):
    """
    Delta store over a SQLAlchemy session factory.

    Each call runs in its own session unless it happens inside
    ``transaction()``, in which case the thread's open session is reused
    and everything commits or rolls back together.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._local = threading.local()
        self._clock_lock = threading.Lock()
        self._last_timestamp: Optional[datetime] = None

    def _now(self) -> datetime:
        with self._clock_lock:
            now = datetime.now(timezone.utc)
            if self._last_timestamp is not None and now <= self._last_timestamp:
                now = self._last_timestamp + timedelta(microseconds=1)
            self._last_timestamp = now
            return now

    @contextmanager
    def _session(self) -> Iterator[Session]:
        current = getattr(self._local, "session", None)
        if current is not None:
            yield current
            return

        session = self._session_factory()
        try:
            with _translate_errors():
                yield session
                session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def _require(self, session: Session, scenario_id: str) -> ScenarioRow:
        with _translate_errors():
            row = session.get(ScenarioRow, scenario_id)
        if row is None:
            raise UnknownScenario(scenario_id)
        return row

    def _find(
        self,
        session: Session,
        scenario_id: str,
        entity_type: EntityType,
        entity_id: str
    ) -> Optional[DeltaRow]:
        return session.scalars(
            select(DeltaRow)
            .where(
                DeltaRow.scenario_id == scenario_id,
                DeltaRow.entity_type == entity_type.value,
                DeltaRow.entity_id == entity_id,
            )
            .execution_options(populate_existing=True)
        ).first()

    def _upsert(
        self,
        session: Session,
        scenario_id: str,
        entity_type: EntityType,
        entity_id: str,
        values: dict[str, Any]
    ) -> None:
        """INSERT ... ON CONFLICT DO UPDATE, so racing first writes both land."""
        dialect = session.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise StoreUnavailable(f"Unsupported database dialect: {dialect}")

        stmt = insert(DeltaRow).values(
            scenario_id=scenario_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["scenario_id", "entity_type", "entity_id"],
            set_={name: stmt.excluded[name] for name in values},
        )
        session.execute(stmt)

    def _update_if_current(
        self,
        session: Session,
        scenario_id: str,
        entity_type: EntityType,
        entity_id: str,
        values: dict[str, Any],
        expected_updated_at: datetime
    ) -> None:
        """Compare-and-set on updated_at in a single statement."""
        result = session.execute(
            update(DeltaRow)
            .where(
                DeltaRow.scenario_id == scenario_id,
                DeltaRow.entity_type == entity_type.value,
                DeltaRow.entity_id == entity_id,
                DeltaRow.updated_at == _as_utc(expected_updated_at),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return

        row = self._find(session, scenario_id, entity_type, entity_id)
        current = _to_record(row) if row is not None else None
        check_expected_version(
            current, _as_utc(expected_updated_at), scenario_id, entity_type, entity_id
        )
        # Matched on read-back but not on update: another writer got in between
        raise Conflict(
            f"Delta for {entity_type.value} {entity_id} in scenario "
            f"{scenario_id} changed since it was read",
            scenario_id=scenario_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
        )

    def ping(self) -> None:
        with self._session() as session:
            with _translate_errors():
                session.execute(text("SELECT 1"))

    # --- Scenarios ---

    def get_scenario(self, scenario_id: str) -> Scenario:
        with self._session() as session:
            return _to_scenario(self._require(session, scenario_id))

    def add_scenario(self, scenario: Scenario) -> Scenario:
        with self._session() as session:
            if session.get(ScenarioRow, scenario.id) is not None:
                raise InvalidDelta(f"Scenario already exists: {scenario.id}")
            if scenario.parent_scenario_id is not None:
                self._require(session, scenario.parent_scenario_id)

            row = ScenarioRow(
                id=scenario.id,
                name=scenario.name,
                scenario_type=scenario.scenario_type.value,
                status=scenario.status.value,
                parent_scenario_id=scenario.parent_scenario_id,
                description=scenario.description,
                created_at=scenario.created_at or self._now(),
            )
            session.add(row)
            session.flush()
            created = _to_scenario(row)

        logger.info(
            "Scenario registered | id=%s type=%s parent=%s",
            created.id,
            created.scenario_type.value,
            created.parent_scenario_id,
        )
        return created

    def lock_for_apply(self, scenario_id: str) -> None:
        """Row-lock the child scenario for the rest of the transaction."""
        with self._session() as session:
            row = session.scalars(
                select(ScenarioRow)
                .where(ScenarioRow.id == scenario_id)
                .with_for_update()
            ).first()
            if row is None:
                raise UnknownScenario(scenario_id)

    # --- Deltas ---

    def get_deltas(self, scenario_id: str) -> list[DeltaRecord]:
        with self._session() as session:
            self._require(session, scenario_id)
            rows = session.scalars(
                select(DeltaRow)
                .where(DeltaRow.scenario_id == scenario_id)
                .execution_options(populate_existing=True)
            ).all()
            return [_to_record(row) for row in rows]

    def get_delta(
        self,
        scenario_id: str,
        entity_type: EntityType,
        entity_id: str
    ) -> Optional[DeltaRecord]:
        with self._session() as session:
            self._require(session, scenario_id)
            row = self._find(session, scenario_id, EntityType(entity_type), entity_id)
            return _to_record(row) if row is not None else None

    def write_delta(
        self,
        scenario_id: str,
        entity_type: EntityType,
        entity_id: str,
        change: DeltaChange,
        expected_updated_at: Optional[datetime] = None
    ) -> DeltaRecord:
        entity_type = EntityType(entity_type)
        values = {
            "operation": change.op.value,
            "payload": getattr(change, "payload", None),
            "updated_at": self._now(),
        }

        with self._session() as session:
            self._require(session, scenario_id)
            with _translate_errors():
                if expected_updated_at is None:
                    self._upsert(session, scenario_id, entity_type, entity_id, values)
                else:
                    self._update_if_current(
                        session, scenario_id, entity_type, entity_id,
                        values, expected_updated_at,
                    )
            session.expire_all()

        record = DeltaRecord(
            scenario_id=scenario_id,
            entity_type=entity_type,
            entity_id=entity_id,
            change=change,
            updated_at=values["updated_at"],
        )
        logger.debug(
            "Delta written | scenario=%s %s=%s op=%s",
            scenario_id, entity_type.value, entity_id, change.op.value,
        )
        return record

    def delete_delta(
        self,
        scenario_id: str,
        entity_type: EntityType,
        entity_id: str
    ) -> bool:
        with self._session() as session:
            self._require(session, scenario_id)
            row = self._find(session, scenario_id, EntityType(entity_type), entity_id)
            if row is None:
                return False
            session.delete(row)
            session.flush()
            return True

    def clear_deltas(self, scenario_id: str) -> int:
        with self._session() as session:
            self._require(session, scenario_id)
            rows = session.scalars(
                select(DeltaRow).where(DeltaRow.scenario_id == scenario_id)
            ).all()
            for row in rows:
                session.delete(row)
            session.flush()
            return len(rows)

    def delete_applied(self, scenario_id: str, records: list[DeltaRecord]) -> None:
        with self._session() as session:
            self._require(session, scenario_id)
            stale = []
            with _translate_errors():
                for record in records:
                    result = session.execute(
                        delete(DeltaRow)
                        .where(
                            DeltaRow.scenario_id == scenario_id,
                            DeltaRow.entity_type == record.entity_type.value,
                            DeltaRow.entity_id == record.entity_id,
                            DeltaRow.updated_at == _as_utc(record.updated_at),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        stale.append(record)
            session.expire_all()
            if stale:
                raise stale_records_conflict(scenario_id, stale)

    def chain_version(self, scenario_ids: Iterable[str]) -> ChainVersion:
        """
        (max updated_at, record count, fingerprint) across the scenarios.

        Other processes stamp writes with their own clocks, so an overwrite
        can land below the current max without changing the count. The
        fingerprint over every (key, updated_at) pair catches that.
        """
        ids = list(scenario_ids)
        if not ids:
            return None, 0, ""
        with self._session() as session:
            with _translate_errors():
                rows = session.execute(
                    select(
                        DeltaRow.scenario_id,
                        DeltaRow.entity_type,
                        DeltaRow.entity_id,
                        DeltaRow.updated_at,
                    )
                    .where(DeltaRow.scenario_id.in_(ids))
                    .order_by(
                        DeltaRow.scenario_id, DeltaRow.entity_type, DeltaRow.entity_id
                    )
                ).all()

        latest: Optional[datetime] = None
        fingerprint = hashlib.blake2b(digest_size=16)
        for scenario_id, entity_type, entity_id, updated_at in rows:
            updated_at = _as_utc(updated_at)
            if latest is None or updated_at > latest:
                latest = updated_at
            fingerprint.update(
                f"{scenario_id}|{entity_type}|{entity_id}|{updated_at.isoformat()}\n".encode()
            )
        return latest, len(rows), fingerprint.hexdigest() if rows else ""

    @contextmanager
    def transaction(self) -> Iterator["SqlDeltaStore"]:
        if getattr(self._local, "session", None) is not None:
            yield self
            return

        session = self._session_factory()
        self._local.session = session
        try:
            with _translate_errors():
                yield self
                session.commit()
        except BaseException:
            session.rollback()
            logger.warning("Transaction rolled back")
            raise
        finally:
            self._local.session = None
            session.close()


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Surface connectivity failures as StoreUnavailable."""
    try:
        yield
    except (OperationalError, DBAPIError) as e:
        if isinstance(e, IntegrityError):
            raise
        logger.error("Store unavailable: %s", e)
        raise StoreUnavailable("Delta store is unavailable", cause=e) from e

"""
SQL store for loopwatch using SQLAlchemy.
Supports SQLite (default) and PostgreSQL.
"""

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    desc,
    or_,
    and_,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..models import (
    Alert,
    AlertSeverity,
    AlertType,
    BrokenReason,
    Loop,
    LoopStage,
    Message,
    MessagePriority,
    MessageStatus,
    to_utc,
)
from .base import LoopStore

Base = declarative_base()


class MessageModel(Base):
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True)
    from_agent = Column(String(255), nullable=False)
    to_agent = Column(String(255), nullable=False)
    content = Column(Text, default="")
    priority = Column(String(20), default="normal")
    status = Column(String(20), default="pending")
    sent_at = Column(DateTime, nullable=False)
    delivered_at = Column(DateTime, nullable=True)
    seen_at = Column(DateTime, nullable=True)
    replied_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_messages_pair", "from_agent", "to_agent"),
        Index("idx_messages_to_agent", "to_agent"),
        Index("idx_messages_sent_at", "sent_at"),
    )


class LoopModel(Base):
    __tablename__ = "loops"

    loop_id = Column(String(36), primary_key=True)
    from_agent = Column(String(255), nullable=False)
    to_agent = Column(String(255), nullable=False)
    origin_message_id = Column(String(36), nullable=False)
    priority = Column(String(20), default="normal")
    started_at = Column(DateTime, nullable=False)
    current_stage = Column(String(30), nullable=False, default="awaiting_reply")
    replied_at = Column(DateTime, nullable=True)
    acted_at = Column(DateTime, nullable=True)
    reported_at = Column(DateTime, nullable=True)
    broken_at = Column(DateTime, nullable=True)
    broken_reason = Column(String(30), nullable=True)
    broken_note = Column(Text, nullable=True)
    escalated_to = Column(String(255), nullable=True)
    reply_message_id = Column(String(36), nullable=True)
    action_ref = Column(String(255), nullable=True)
    final_report = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_loops_stage", "current_stage"),
        Index("idx_loops_to_agent", "to_agent"),
        Index("idx_loops_origin", "origin_message_id"),
    )


class AlertModel(Base):
    __tablename__ = "loop_alerts"

    alert_id = Column(String(36), primary_key=True)
    loop_id = Column(String(36), nullable=False)
    alert_type = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False)
    sent_at = Column(DateTime, nullable=False)
    from_agent = Column(String(255), nullable=False)
    to_agent = Column(String(255), nullable=False)
    message_status_label = Column(String(20), default="")
    escalated_to = Column(String(255), nullable=True)
    note = Column(Text, nullable=True)
    resolved = Column(Boolean, default=False)
    created_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("loop_id", "alert_type", name="uq_loop_alerts_loop_type"),
        Index("idx_loop_alerts_resolved", "resolved"),
    )


def _db_ts(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC."""
    if value is None:
        return None
    return to_utc(value).replace(tzinfo=None)


def _py_ts(value: Optional[datetime]) -> Optional[datetime]:
    return to_utc(value) if value is not None else None


def _to_message(row: MessageModel) -> Message:
    return Message(
        id=row.id,
        from_agent=row.from_agent,
        to_agent=row.to_agent,
        content=row.content or "",
        sent_at=_py_ts(row.sent_at),
        priority=MessagePriority(row.priority or "normal"),
        status=MessageStatus(row.status or "pending"),
        delivered_at=_py_ts(row.delivered_at),
        seen_at=_py_ts(row.seen_at),
        replied_at=_py_ts(row.replied_at),
    )


def _to_loop(row: LoopModel) -> Loop:
    return Loop(
        loop_id=row.loop_id,
        from_agent=row.from_agent,
        to_agent=row.to_agent,
        origin_message_id=row.origin_message_id,
        started_at=_py_ts(row.started_at),
        priority=MessagePriority(row.priority or "normal"),
        current_stage=LoopStage(row.current_stage),
        replied_at=_py_ts(row.replied_at),
        acted_at=_py_ts(row.acted_at),
        reported_at=_py_ts(row.reported_at),
        broken_at=_py_ts(row.broken_at),
        broken_reason=BrokenReason(row.broken_reason) if row.broken_reason else None,
        broken_note=row.broken_note,
        escalated_to=row.escalated_to,
        reply_message_id=row.reply_message_id,
        action_ref=row.action_ref,
        final_report=row.final_report,
    )


def _to_alert(row: AlertModel) -> Alert:
    return Alert(
        alert_id=row.alert_id,
        loop_id=row.loop_id,
        alert_type=AlertType(row.alert_type),
        severity=AlertSeverity(row.severity),
        sent_at=_py_ts(row.sent_at),
        from_agent=row.from_agent,
        to_agent=row.to_agent,
        message_status_label=row.message_status_label or "",
        created_at=_py_ts(row.created_at),
        escalated_to=row.escalated_to,
        note=row.note,
        resolved=bool(row.resolved),
        resolved_at=_py_ts(row.resolved_at),
    )


def _loop_columns(changes: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in changes.items():
        if isinstance(value, datetime):
            value = _db_ts(value)
        elif hasattr(value, "value"):
            value = value.value
        values[key] = value
    return values


class Database:
    """SQLAlchemy engine and session factory."""

    def __init__(self, database_url: str):
        self.database_url = database_url

        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False

        self.engine = create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool if database_url.startswith("sqlite") else None,
        )
        self.SessionLocal = sessionmaker(bind=self.engine)

    def create_tables(self):
        """Create all tables."""
        Base.metadata.create_all(self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()


class SQLLoopStore(LoopStore):
    """Store backed by a relational database.

    Stage compare-and-set is a conditional ``UPDATE ... WHERE
    current_stage = :expected``; alert uniqueness is a table constraint.
    """

    def __init__(self, database: Database):
        self.database = database
        # SQLite shares one pooled connection across threads.
        self._serialize = database.database_url.startswith("sqlite")
        self._lock = threading.RLock()

    @classmethod
    def from_url(cls, database_url: str) -> "SQLLoopStore":
        database = Database(database_url)
        database.create_tables()
        return cls(database)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        if self._serialize:
            self._lock.acquire()
        session = self.database.get_session()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
            if self._serialize:
                self._lock.release()

    # ==================== Messages ====================

    def record_if_absent(self, message: Message) -> bool:
        with self._session() as session:
            if session.get(MessageModel, message.id) is not None:
                return False
            session.add(
                MessageModel(
                    id=message.id,
                    from_agent=message.from_agent,
                    to_agent=message.to_agent,
                    content=message.content,
                    priority=message.priority.value,
                    status=message.status.value,
                    sent_at=_db_ts(message.sent_at),
                    delivered_at=_db_ts(message.delivered_at),
                    seen_at=_db_ts(message.seen_at),
                    replied_at=_db_ts(message.replied_at),
                )
            )
            try:
                session.commit()
            except IntegrityError:
                # Concurrent insert of the same id from another process.
                session.rollback()
                return False
        return True

    def get(self, message_id: str) -> Optional[Message]:
        with self._session() as session:
            row = session.get(MessageModel, message_id)
            return _to_message(row) if row else None

    def list_by_participants(
        self, agent_a: str, agent_b: str, limit: int = 50
    ) -> list[Message]:
        with self._session() as session:
            rows = (
                session.query(MessageModel)
                .filter(
                    or_(
                        and_(MessageModel.from_agent == agent_a, MessageModel.to_agent == agent_b),
                        and_(MessageModel.from_agent == agent_b, MessageModel.to_agent == agent_a),
                    )
                )
                .order_by(desc(MessageModel.sent_at))
                .limit(limit)
                .all()
            )
            return [_to_message(row) for row in rows]

    def list_messages(
        self,
        to_agent: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Message]:
        with self._session() as session:
            query = session.query(MessageModel)
            if to_agent is not None:
                query = query.filter(MessageModel.to_agent == to_agent)
            if since is not None:
                query = query.filter(MessageModel.sent_at >= _db_ts(since))
            query = query.order_by(desc(MessageModel.sent_at))
            if limit is not None:
                query = query.limit(limit)
            return [_to_message(row) for row in query.all()]

    def advance_message_status(
        self, message_id: str, status: MessageStatus, at: datetime
    ) -> Optional[Message]:
        with self._session() as session:
            row = session.get(MessageModel, message_id)
            if row is None:
                return None
            if status.rank > MessageStatus(row.status).rank:
                row.status = status.value
                if status == MessageStatus.DELIVERED:
                    row.delivered_at = _db_ts(at)
                elif status == MessageStatus.SEEN:
                    row.seen_at = _db_ts(at)
                elif status == MessageStatus.REPLIED:
                    row.replied_at = _db_ts(at)
                session.commit()
                session.refresh(row)
            return _to_message(row)

    # ==================== Loops ====================

    def add_loop(self, loop: Loop) -> Loop:
        with self._session() as session:
            values = _loop_columns(loop.to_dict())
            for key in ("started_at", "replied_at", "acted_at", "reported_at", "broken_at"):
                values[key] = _db_ts(getattr(loop, key))
            session.add(LoopModel(**values))
            session.commit()
        return loop

    def get_loop(self, loop_id: str) -> Optional[Loop]:
        with self._session() as session:
            row = session.get(LoopModel, loop_id)
            return _to_loop(row) if row else None

    def list_loops(
        self,
        stages: Optional[Iterable[LoopStage]] = None,
        to_agent: Optional[str] = None,
        started_since: Optional[datetime] = None,
    ) -> list[Loop]:
        with self._session() as session:
            query = session.query(LoopModel)
            if stages is not None:
                query = query.filter(LoopModel.current_stage.in_([s.value for s in stages]))
            if to_agent is not None:
                query = query.filter(LoopModel.to_agent == to_agent)
            if started_since is not None:
                query = query.filter(LoopModel.started_at >= _db_ts(started_since))
            rows = query.order_by(LoopModel.started_at).all()
            return [_to_loop(row) for row in rows]

    def find_loop_by_origin(self, message_id: str) -> Optional[Loop]:
        with self._session() as session:
            row = (
                session.query(LoopModel)
                .filter(LoopModel.origin_message_id == message_id)
                .first()
            )
            return _to_loop(row) if row else None

    def find_loop_by_reply(self, message_id: str) -> Optional[Loop]:
        with self._session() as session:
            row = (
                session.query(LoopModel)
                .filter(LoopModel.reply_message_id == message_id)
                .first()
            )
            return _to_loop(row) if row else None

    def compare_and_set_loop(
        self, loop_id: str, expected_stage: LoopStage, changes: dict[str, Any]
    ) -> Optional[Loop]:
        with self._session() as session:
            updated = (
                session.query(LoopModel)
                .filter(
                    LoopModel.loop_id == loop_id,
                    LoopModel.current_stage == expected_stage.value,
                )
                .update(_loop_columns(changes), synchronize_session=False)
            )
            if updated != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(LoopModel, loop_id)
            return _to_loop(row) if row else None

    # ==================== Alerts ====================

    def add_alert_if_absent(self, alert: Alert) -> tuple[Alert, bool]:
        with self._session() as session:
            session.add(
                AlertModel(
                    alert_id=alert.alert_id,
                    loop_id=alert.loop_id,
                    alert_type=alert.alert_type.value,
                    severity=alert.severity.value,
                    sent_at=_db_ts(alert.sent_at),
                    from_agent=alert.from_agent,
                    to_agent=alert.to_agent,
                    message_status_label=alert.message_status_label,
                    escalated_to=alert.escalated_to,
                    note=alert.note,
                    resolved=alert.resolved,
                    created_at=_db_ts(alert.created_at),
                    resolved_at=_db_ts(alert.resolved_at),
                )
            )
            try:
                session.commit()
                return alert, True
            except IntegrityError:
                session.rollback()

            existing = (
                session.query(AlertModel)
                .filter(
                    AlertModel.loop_id == alert.loop_id,
                    AlertModel.alert_type == alert.alert_type.value,
                )
                .one()
            )
            return _to_alert(existing), False

    def list_alerts(
        self, resolved: Optional[bool] = None, loop_id: Optional[str] = None
    ) -> list[Alert]:
        with self._session() as session:
            query = session.query(AlertModel)
            if resolved is not None:
                query = query.filter(AlertModel.resolved == resolved)
            if loop_id is not None:
                query = query.filter(AlertModel.loop_id == loop_id)
            rows = query.order_by(AlertModel.created_at).all()
            return [_to_alert(row) for row in rows]

    def resolve_alerts(
        self,
        loop_id: str,
        at: datetime,
        alert_types: Optional[Iterable[AlertType]] = None,
    ) -> list[Alert]:
        with self._session() as session:
            query = session.query(AlertModel).filter(
                AlertModel.loop_id == loop_id,
                AlertModel.resolved.is_(False),
            )
            if alert_types is not None:
                query = query.filter(AlertModel.alert_type.in_([t.value for t in alert_types]))
            rows = query.all()
            for row in rows:
                row.resolved = True
                row.resolved_at = _db_ts(at)
            session.commit()
            return [_to_alert(row) for row in rows]

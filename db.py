"""Database module for PostgreSQL operations using SQLAlchemy async."""

from contextlib import asynccontextmanager, contextmanager
from datetime import date, datetime, timezone
import logging
import os
from typing import Any, AsyncIterator, Iterator

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    case,
    cast,
    extract,
    func,
    literal,
    literal_column,
    not_,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from errors import ConflictError, StoreError
from ranks import RANK_LADDER, TERMINAL_INDEX

logger = logging.getLogger(__name__)

OPEN_QUEUE_STATUSES = ("queued", "confirmed", "failed")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ClanListMember(Base):
    __tablename__ = "clan_list_members"
    __table_args__ = (
        UniqueConstraint("uid", name="uq_clan_list_members_uid"),
        UniqueConstraint("discord_id", name="uq_clan_list_members_discord_id"),
        Index("ix_clan_list_members_join_date", "join_date"),
        Index("ix_clan_list_members_status_tag", "status", "has_420_tag"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    discord_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    discord_name: Mapped[str] = mapped_column(Text, nullable=False)
    ign: Mapped[str] = mapped_column(Text, nullable=False)
    uid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    join_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    has_420_tag: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rank_current: Mapped[str] = mapped_column(
        String(32), nullable=False, default="Private"
    )
    rank_next: Mapped[str | None] = mapped_column(String(32), nullable=True)
    frozen_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    counting_since: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    promote_eligible: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    promote_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    needs_resolution: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    resolution_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="unresolved"
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolved_by: Mapped[str | None] = mapped_column(String(32), nullable=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )


class PromotionQueueItem(Base):
    __tablename__ = "promotion_queue"
    __table_args__ = (
        Index(
            "uq_promotion_queue_member_open",
            "member_id",
            unique=True,
            postgresql_where=text("status IN ('queued', 'confirmed', 'failed')"),
        ),
        Index("ix_promotion_queue_status", "status"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    member_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("clan_list_members.id"), nullable=False
    )
    from_rank: Mapped[str] = mapped_column(String(32), nullable=False)
    to_rank: Mapped[str] = mapped_column(String(32), nullable=False)
    tenure_days: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="queued")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    confirmed_by: Mapped[str | None] = mapped_column(String(32), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_by: Mapped[str | None] = mapped_column(String(32), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )


class ClanApplication(Base):
    __tablename__ = "applications"
    __table_args__ = (
        Index("ix_applications_status_created", "status", "created_at"),
        Index("ix_applications_discord_id", "discord_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    discord_id: Mapped[str] = mapped_column(String(32), nullable=False)
    discord_name: Mapped[str] = mapped_column(Text, nullable=False)
    ign: Mapped[str | None] = mapped_column(Text, nullable=True)
    uid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    answers: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    log_thread_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    reviewer_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reviewer_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    deny_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    accepted_by: Mapped[str | None] = mapped_column(String(32), nullable=True)
    denied_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    denied_by: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )


class AuditLog(Base):
    __tablename__ = "audit_log"
    __table_args__ = (Index("ix_audit_log_action_created", "action", "created_at"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    target_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _require_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError(
            "DATABASE_URL is not set. Configure it in the environment before starting the service."
        )
    return database_url


def _build_async_database_url(raw_url: str) -> str:
    if raw_url.startswith("postgres://"):
        return raw_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if raw_url.startswith("postgresql+psycopg://"):
        return raw_url.replace("postgresql+psycopg://", "postgresql+asyncpg://", 1)
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return raw_url


async def connect_db() -> None:
    """Create the async engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        raw_url = _require_database_url()
        async_url = _build_async_database_url(raw_url)
        _engine = create_async_engine(async_url, pool_pre_ping=True)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)


async def close_db() -> None:
    """Dispose the async engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with _get_session() as session:
        yield session


@asynccontextmanager
async def _get_session() -> AsyncIterator[AsyncSession]:
    if _session_factory is None:
        await connect_db()
    assert _session_factory is not None
    async with _session_factory() as session:
        yield session


@asynccontextmanager
async def _session_scope(session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
    """Use the caller's session as-is, or open one that commits on success."""
    if session is not None:
        yield session
        return
    async with _get_session() as own_session:
        try:
            yield own_session
            await own_session.commit()
        except Exception:
            await own_session.rollback()
            raise


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    """Re-raise SQLAlchemy failures as the service's store errors."""
    try:
        yield
    except IntegrityError as e:
        logger.warning("%s conflict: %s", operation, e.orig if e.orig else e)
        raise ConflictError(f"{operation} failed: constraint violation") from e
    except SQLAlchemyError as e:
        logger.error("%s failed: %s", operation, e, exc_info=True)
        raise StoreError(f"{operation} failed") from e


def _model_to_dict(obj: Base) -> dict[str, Any]:
    return {column.key: getattr(obj, column.key) for column in obj.__table__.columns}


# ── Roster ──────────────────────────────────────────────────


async def insert_clan_member(
    values: dict[str, Any], session: AsyncSession | None = None
) -> dict[str, Any]:
    now = _utc_now()
    async with _session_scope(session) as s:
        member = ClanListMember(**values, created_at=now, updated_at=now)
        s.add(member)
        await s.flush()
        return _model_to_dict(member)


async def get_clan_member_by_id(
    member_id: int,
    *,
    for_update: bool = False,
    session: AsyncSession | None = None,
) -> dict[str, Any] | None:
    async with _session_scope(session) as s:
        stmt = select(ClanListMember).where(ClanListMember.id == member_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await s.execute(stmt)
        member = result.scalar_one_or_none()
        return _model_to_dict(member) if member else None


async def update_clan_member_fields(
    member_id: int,
    values: dict[str, Any],
    *,
    now: datetime | None = None,
    session: AsyncSession | None = None,
) -> dict[str, Any] | None:
    now = now or _utc_now()
    async with _session_scope(session) as s:
        result = await s.execute(
            update(ClanListMember.__table__)
            .where(ClanListMember.__table__.c.id == member_id)
            .values(**values, updated_at=now)
            .returning(*ClanListMember.__table__.c)
        )
        row = result.mappings().one_or_none()
        return dict(row) if row else None


async def upsert_clan_member_by_uid(
    values: dict[str, Any],
    *,
    keep_when_linked: tuple[str, ...] = (),
    now: datetime | None = None,
    session: AsyncSession | None = None,
) -> tuple[dict[str, Any], bool]:
    """
    Insert or overwrite the roster row keyed by uid; returns (row, inserted).

    Columns in keep_when_linked are only overwritten on rows that have no
    discord id yet.
    """
    now = now or _utc_now()
    table = ClanListMember.__table__
    stmt = pg_insert(table).values(**values, created_at=now, updated_at=now)
    updates: dict[str, Any] = {}
    for key in values:
        if key == "uid":
            continue
        if key in keep_when_linked:
            updates[key] = case(
                (table.c.discord_id.is_(None), stmt.excluded[key]),
                else_=table.c[key],
            )
        else:
            updates[key] = stmt.excluded[key]
    stmt = stmt.on_conflict_do_update(
        index_elements=["uid"],
        set_={
            **updates,
            "updated_at": now,
        },
    ).returning(*table.c, literal_column("(xmax = 0)").label("inserted"))
    async with _session_scope(session) as s:
        result = await s.execute(stmt)
        row = dict(result.mappings().one())
    inserted = bool(row.pop("inserted"))
    return row, inserted


def _live_days(now: datetime) -> Any:
    """Whole days since counting_since; NULL while the clock is stopped."""
    return func.greatest(
        func.floor(
            extract(
                "epoch",
                literal(now, DateTime(timezone=True))
                - ClanListMember.__table__.c.counting_since,
            )
            / 86_400
        ),
        0,
    )


def promotion_due_clause(now: datetime) -> Any:
    """
    SQL form of the rank projection's eligibility, evaluated at now.

    The stored promote_eligible column is only as fresh as the last write,
    so filters and counts recompute it from the tenure inputs.
    """
    table = ClanListMember.__table__
    tenure = func.greatest(table.c.frozen_days, 0) + func.coalesce(_live_days(now), 0)
    earned_idx = case(
        *[
            (tenure >= rank.min_days, index)
            for index, rank in reversed(list(enumerate(RANK_LADDER)))
        ],
        else_=0,
    )
    current_name = func.lower(func.trim(table.c.rank_current))
    current_idx = case(
        *[
            (current_name == rank.name.lower(), index)
            for index, rank in enumerate(RANK_LADDER)
        ],
        else_=0,
    )
    return and_(
        table.c.status == "active",
        table.c.has_420_tag.is_(True),
        earned_idx > current_idx,
        current_idx < TERMINAL_INDEX,
    )


async def upsert_clan_member_by_discord_id(
    values: dict[str, Any],
    *,
    now: datetime | None = None,
    session: AsyncSession | None = None,
) -> dict[str, Any]:
    """
    Insert or refresh the roster row keyed by discord id.

    An existing row keeps its join date and uid, and its live days are folded
    into frozen_days because the refreshed row starts without the clan tag.
    """
    now = now or _utc_now()
    table = ClanListMember.__table__
    stmt = pg_insert(table).values(**values, created_at=now, updated_at=now)
    live_days = _live_days(now)
    preserved = {"discord_id", "join_date", "uid", "source", "frozen_days"}
    stmt = stmt.on_conflict_do_update(
        index_elements=["discord_id"],
        set_={
            **{key: stmt.excluded[key] for key in values if key not in preserved},
            "uid": func.coalesce(table.c.uid, stmt.excluded.uid),
            "frozen_days": cast(
                table.c.frozen_days + func.coalesce(live_days, 0), Integer
            ),
            "updated_at": now,
        },
    ).returning(*table.c)
    async with _session_scope(session) as s:
        result = await s.execute(stmt)
        return dict(result.mappings().one())


def _member_filters(
    search: str | None,
    status: str | None,
    has_tag: bool | None,
    promotion_due: bool | None,
    now: datetime,
) -> list[Any]:
    filters: list[Any] = []
    if status in ("active", "inactive"):
        filters.append(ClanListMember.status == status)
    if has_tag is not None:
        filters.append(ClanListMember.has_420_tag.is_(has_tag))
    if promotion_due is not None:
        due = promotion_due_clause(now)
        filters.append(due if promotion_due else not_(due))
    if search:
        pattern = f"%{search}%"
        filters.append(
            or_(
                ClanListMember.discord_name.ilike(pattern),
                ClanListMember.ign.ilike(pattern),
                ClanListMember.uid.ilike(pattern),
            )
        )
    return filters


async def list_clan_members(
    *,
    page: int = 1,
    page_size: int = 50,
    search: str | None = None,
    status: str | None = None,
    has_tag: bool | None = None,
    promotion_due: bool | None = None,
    now: datetime | None = None,
    session: AsyncSession | None = None,
) -> tuple[list[dict[str, Any]], int]:
    """Page of roster rows ordered by join date, plus the filtered total."""
    filters = _member_filters(
        search, status, has_tag, promotion_due, now or _utc_now()
    )
    offset = (max(1, page) - 1) * page_size
    async with _session_scope(session) as s:
        total = await s.scalar(
            select(func.count()).select_from(ClanListMember).where(*filters)
        )
        result = await s.execute(
            select(ClanListMember)
            .where(*filters)
            .order_by(ClanListMember.join_date.asc(), ClanListMember.id.asc())
            .offset(offset)
            .limit(page_size)
        )
        members = result.scalars().all()
        return [_model_to_dict(member) for member in members], int(total or 0)


async def count_clan_members(
    *,
    promotion_due: bool | None = None,
    needs_resolution: bool | None = None,
    now: datetime | None = None,
    session: AsyncSession | None = None,
) -> int:
    filters = []
    if promotion_due is not None:
        due = promotion_due_clause(now or _utc_now())
        filters.append(due if promotion_due else not_(due))
    if needs_resolution is not None:
        filters.append(ClanListMember.needs_resolution.is_(needs_resolution))
    async with _session_scope(session) as s:
        total = await s.scalar(
            select(func.count()).select_from(ClanListMember).where(*filters)
        )
        return int(total or 0)


async def list_unresolved_clan_members(
    session: AsyncSession | None = None,
) -> list[dict[str, Any]]:
    async with _session_scope(session) as s:
        result = await s.execute(
            select(ClanListMember)
            .where(
                or_(
                    ClanListMember.discord_id.is_(None),
                    ClanListMember.needs_resolution.is_(True),
                )
            )
            .order_by(ClanListMember.id.asc())
        )
        return [_model_to_dict(member) for member in result.scalars().all()]


async def list_active_tagged_clan_members(
    session: AsyncSession | None = None,
) -> list[dict[str, Any]]:
    async with _session_scope(session) as s:
        result = await s.execute(
            select(ClanListMember)
            .where(
                ClanListMember.status == "active",
                ClanListMember.has_420_tag.is_(True),
            )
            .order_by(ClanListMember.id.asc())
        )
        return [_model_to_dict(member) for member in result.scalars().all()]


# ── Promotion queue ─────────────────────────────────────────


async def insert_promotion_queue_item(
    *,
    member_id: int,
    from_rank: str,
    to_rank: str,
    tenure_days: int,
    now: datetime | None = None,
    session: AsyncSession | None = None,
) -> bool:
    """Queue a promotion unless the member already has an open item."""
    now = now or _utc_now()
    stmt = (
        pg_insert(PromotionQueueItem.__table__)
        .values(
            member_id=member_id,
            from_rank=from_rank,
            to_rank=to_rank,
            tenure_days=tenure_days,
            status="queued",
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=["member_id"],
            index_where=PromotionQueueItem.status.in_(OPEN_QUEUE_STATUSES),
        )
        .returning(PromotionQueueItem.__table__.c.id)
    )
    async with _session_scope(session) as s:
        result = await s.execute(stmt)
        return result.scalar_one_or_none() is not None


def _queue_select():
    return select(
        PromotionQueueItem,
        ClanListMember.discord_id,
        ClanListMember.discord_name,
        ClanListMember.ign,
        ClanListMember.uid,
    ).join(ClanListMember, ClanListMember.id == PromotionQueueItem.member_id)


def _queue_row_to_dict(row: Any) -> dict[str, Any]:
    item = _model_to_dict(row[0])
    item.update(
        discord_id=row.discord_id,
        discord_name=row.discord_name,
        ign=row.ign,
        uid=row.uid,
    )
    return item


async def list_promotion_queue(
    statuses: tuple[str, ...] | None = None,
    session: AsyncSession | None = None,
) -> list[dict[str, Any]]:
    stmt = _queue_select().order_by(PromotionQueueItem.created_at.asc(), PromotionQueueItem.id.asc())
    if statuses:
        stmt = stmt.where(PromotionQueueItem.status.in_(statuses))
    async with _session_scope(session) as s:
        result = await s.execute(stmt)
        return [_queue_row_to_dict(row) for row in result.all()]


async def get_promotion_queue_item(
    item_id: int, session: AsyncSession | None = None
) -> dict[str, Any] | None:
    async with _session_scope(session) as s:
        result = await s.execute(_queue_select().where(PromotionQueueItem.id == item_id))
        row = result.first()
        return _queue_row_to_dict(row) if row else None


async def count_promotion_queue(
    status: str,
    *,
    resolved: bool | None = None,
    session: AsyncSession | None = None,
) -> int:
    stmt = (
        select(func.count())
        .select_from(PromotionQueueItem)
        .join(ClanListMember, ClanListMember.id == PromotionQueueItem.member_id)
        .where(PromotionQueueItem.status == status)
    )
    if resolved is True:
        stmt = stmt.where(ClanListMember.discord_id.is_not(None))
    elif resolved is False:
        stmt = stmt.where(ClanListMember.discord_id.is_(None))
    async with _session_scope(session) as s:
        return int(await s.scalar(stmt) or 0)


async def transition_promotion_queue_item(
    item_id: int,
    *,
    from_status: str,
    to_status: str,
    values: dict[str, Any] | None = None,
    now: datetime | None = None,
    session: AsyncSession | None = None,
) -> bool:
    """Move one item between states; False if it was no longer in from_status."""
    now = now or _utc_now()
    async with _session_scope(session) as s:
        result = await s.execute(
            update(PromotionQueueItem.__table__)
            .where(
                PromotionQueueItem.__table__.c.id == item_id,
                PromotionQueueItem.__table__.c.status == from_status,
            )
            .values(status=to_status, updated_at=now, **(values or {}))
        )
        return result.rowcount == 1


async def confirm_resolved_queued_items(
    *,
    actor_id: str | None,
    now: datetime | None = None,
    session: AsyncSession | None = None,
) -> int:
    now = now or _utc_now()
    resolved_members = select(ClanListMember.id).where(
        ClanListMember.discord_id.is_not(None)
    )
    table = PromotionQueueItem.__table__
    async with _session_scope(session) as s:
        result = await s.execute(
            update(table)
            .where(table.c.status == "queued", table.c.member_id.in_(resolved_members))
            .values(
                status="confirmed",
                confirmed_by=actor_id,
                confirmed_at=now,
                updated_at=now,
            )
        )
        return int(result.rowcount or 0)


async def remove_open_queue_items(
    *, now: datetime | None = None, session: AsyncSession | None = None
) -> int:
    now = now or _utc_now()
    table = PromotionQueueItem.__table__
    async with _session_scope(session) as s:
        result = await s.execute(
            update(table)
            .where(table.c.status.in_(OPEN_QUEUE_STATUSES))
            .values(status="removed", updated_at=now)
        )
        return int(result.rowcount or 0)


# ── Applications ────────────────────────────────────────────


async def get_application_by_id(
    application_id: int, session: AsyncSession | None = None
) -> dict[str, Any] | None:
    async with _session_scope(session) as s:
        result = await s.execute(
            select(ClanApplication).where(ClanApplication.id == application_id)
        )
        application = result.scalar_one_or_none()
        return _model_to_dict(application) if application else None


async def list_applications(
    status: str | None = None, session: AsyncSession | None = None
) -> list[dict[str, Any]]:
    stmt = select(ClanApplication).order_by(ClanApplication.created_at.desc())
    if status:
        stmt = stmt.where(ClanApplication.status == status)
    async with _session_scope(session) as s:
        result = await s.execute(stmt)
        return [_model_to_dict(application) for application in result.scalars().all()]


async def transition_application(
    application_id: int,
    *,
    from_status: str,
    to_status: str,
    values: dict[str, Any],
    now: datetime | None = None,
    session: AsyncSession | None = None,
) -> dict[str, Any] | None:
    """Conditionally move an application; None if it was not in from_status."""
    now = now or _utc_now()
    table = ClanApplication.__table__
    async with _session_scope(session) as s:
        result = await s.execute(
            update(table)
            .where(and_(table.c.id == application_id, table.c.status == from_status))
            .values(status=to_status, updated_at=now, **values)
            .returning(*table.c)
        )
        row = result.mappings().one_or_none()
        return dict(row) if row else None


# ── Audit ───────────────────────────────────────────────────


async def write_audit_log(
    action: str,
    *,
    actor_id: str | None,
    target_id: str | int | None = None,
    details: dict[str, Any] | None = None,
    session: AsyncSession | None = None,
) -> bool:
    """Append an audit record. Failures are logged and reported as False."""
    try:
        async with _session_scope(session) as s:
            s.add(
                AuditLog(
                    action=action,
                    actor_id=actor_id,
                    target_id=str(target_id) if target_id is not None else None,
                    details=details or {},
                    created_at=_utc_now(),
                )
            )
            await s.flush()
    except SQLAlchemyError as e:
        logger.error("Failed to write audit record %s: %s", action, e, exc_info=True)
        return False
    return True

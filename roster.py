"""Roster operations: create, update, upsert and resolve clan list members.

Stored tenure fields (``frozen_days``, ``counting_since``) are the baseline;
``rank_next``, ``promote_eligible`` and ``promote_reason`` are a projection
that every write path recomputes in the same statement that changes its
inputs. Reads recompute the projection again because live days keep
accruing between writes.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from typing import Any

from config import CLAN_LIST_PAGE_SIZE
from db import (
    count_clan_members,
    get_clan_member_by_id,
    get_session,
    insert_clan_member,
    list_clan_members,
    translate_store_errors,
    update_clan_member_fields,
    upsert_clan_member_by_discord_id,
    upsert_clan_member_by_uid,
    write_audit_log,
)
from discord_api import DiscordAPIError, get_api_client
from errors import ExternalServiceError, NotFoundError, ValidationError
from ranks import (
    ENTRY_RANK,
    RANK_LADDER,
    days_since,
    derive_rank_fields,
    normalize_rank_name,
    rank_index,
)

logger = logging.getLogger(__name__)

MEMBER_STATUSES = ("active", "inactive")
UPDATABLE_FIELDS = (
    "discord_name",
    "discord_id",
    "ign",
    "uid",
    "join_date",
    "status",
    "has_420_tag",
    "rank_current",
    "needs_resolution",
)
_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%d.%m.%Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_join_date(raw: Any) -> date | None:
    """Parse a join date from a date, datetime or one of the common text forms."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = str(raw).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def is_counting(status: str, has_tag: bool) -> bool:
    return status == "active" and bool(has_tag)


def freeze_transition(
    existing: dict[str, Any], new_status: str, new_tag: bool, now: datetime
) -> dict[str, Any]:
    """
    Tenure field changes for a status/tag edit.

    Leaving active+tagged rolls the live days into frozen_days and stops the
    clock; entering it starts the clock now. Otherwise nothing changes.
    """
    was_counting = is_counting(existing["status"], existing["has_420_tag"])
    now_counting = is_counting(new_status, new_tag)
    if was_counting and not now_counting:
        frozen = int(existing.get("frozen_days") or 0)
        since = existing.get("counting_since")
        if since is not None:
            frozen += days_since(since, now)
        return {"frozen_days": frozen, "counting_since": None}
    if not was_counting and now_counting:
        return {"counting_since": now}
    return {}


def derived_fields(member: dict[str, Any], now: datetime) -> dict[str, Any]:
    projection = derive_rank_fields(
        status=member["status"],
        has_tag=member["has_420_tag"],
        frozen_days=member.get("frozen_days"),
        counting_since=member.get("counting_since"),
        current_rank=member.get("rank_current"),
        now=now,
    )
    return projection.as_fields()


def project_member(member: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    """Roster row with live tenure and a freshly computed rank projection."""
    now = now or _utc_now()
    projection = derive_rank_fields(
        status=member["status"],
        has_tag=member["has_420_tag"],
        frozen_days=member.get("frozen_days"),
        counting_since=member.get("counting_since"),
        current_rank=member.get("rank_current"),
        now=now,
    )
    return {
        **member,
        **projection.as_fields(),
        "time_in_clan_days": projection.tenure_days,
    }


def _require_text(payload: dict[str, Any], field: str) -> str:
    value = payload.get(field)
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    return str(value).strip()


def _validate_status(status: Any) -> str:
    if status not in MEMBER_STATUSES:
        raise ValidationError("status must be 'active' or 'inactive'")
    return status


async def create_member(
    payload: dict[str, Any],
    *,
    actor_id: str | None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Create a roster row entered by staff."""
    now = now or _utc_now()
    missing = [
        field
        for field in ("discord_name", "ign", "uid", "join_date")
        if payload.get(field) is None or not str(payload.get(field)).strip()
    ]
    if missing:
        raise ValidationError(
            "discord_name, ign, uid, and join_date are required", missing=missing
        )
    join_date = parse_join_date(payload["join_date"])
    if join_date is None:
        raise ValidationError("join_date is not a valid date")

    status = _validate_status(payload.get("status", "active"))
    has_tag = bool(payload.get("has_420_tag", False))
    discord_id = payload.get("discord_id") or None
    counting = is_counting(status, has_tag)
    record: dict[str, Any] = {
        "discord_name": _require_text(payload, "discord_name"),
        "discord_id": discord_id,
        "ign": _require_text(payload, "ign"),
        "uid": _require_text(payload, "uid"),
        "join_date": join_date,
        "status": status,
        "has_420_tag": has_tag,
        "rank_current": normalize_rank_name(payload.get("rank_current")),
        "frozen_days": 0,
        "counting_since": start_of_day(join_date) if counting else None,
        "needs_resolution": bool(payload.get("needs_resolution", discord_id is None)),
        "resolution_status": "resolved_manual" if discord_id else "unresolved",
        "resolved_at": now if discord_id else None,
        "resolved_by": actor_id if discord_id else None,
        "source": "manual",
    }
    record.update(derived_fields(record, now))

    with translate_store_errors("Create clan member"):
        created = await insert_clan_member(record)

    await write_audit_log(
        "clan_member_added",
        actor_id=actor_id,
        target_id=created["id"],
        details={
            "discord_name": record["discord_name"],
            "ign": record["ign"],
            "uid": record["uid"],
        },
    )
    return project_member(created, now)


def _merge_changes(changes: dict[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for field in UPDATABLE_FIELDS:
        if field not in changes:
            continue
        value = changes[field]
        if field == "join_date":
            value = parse_join_date(value)
            if value is None:
                raise ValidationError("join_date is not a valid date")
        elif field == "status":
            value = _validate_status(value)
        elif field == "rank_current":
            value = normalize_rank_name(value)
        elif field in ("has_420_tag", "needs_resolution"):
            value = bool(value)
        elif field in ("discord_name", "ign") and not str(value or "").strip():
            raise ValidationError(f"{field} cannot be empty")
        merged[field] = value
    return merged


async def update_member(
    member_id: int,
    changes: dict[str, Any],
    *,
    actor_id: str | None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Merge staff edits into a roster row.

    The row is locked, the freeze transition applied for status/tag edits,
    and the rank projection rewritten in the same update.
    """
    now = now or _utc_now()
    merged = _merge_changes(changes)

    with translate_store_errors("Update clan member"):
        async with get_session() as session:
            try:
                existing = await get_clan_member_by_id(
                    member_id, for_update=True, session=session
                )
                if existing is None:
                    raise NotFoundError("Member not found")

                new_status = merged.get("status", existing["status"])
                new_tag = merged.get("has_420_tag", existing["has_420_tag"])
                merged.update(freeze_transition(existing, new_status, new_tag, now))
                merged.update(derived_fields({**existing, **merged}, now))

                updated = await update_clan_member_fields(
                    member_id, merged, now=now, session=session
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    await write_audit_log(
        "clan_member_updated",
        actor_id=actor_id,
        target_id=member_id,
        details={"fields": sorted(key for key in changes if key in UPDATABLE_FIELDS)},
    )
    return project_member(updated, now)


async def upsert_member_by_uid(
    record: dict[str, Any],
    *,
    keep_when_linked: tuple[str, ...] = (),
    now: datetime | None = None,
) -> tuple[dict[str, Any], bool]:
    with translate_store_errors(f"Upsert clan member uid={record.get('uid')}"):
        return await upsert_clan_member_by_uid(
            record, keep_when_linked=keep_when_linked, now=now
        )


def application_member_record(
    application: dict[str, Any], accepted_at: datetime
) -> dict[str, Any]:
    """Roster values for an accepted applicant: active, untagged, entry rank."""
    record: dict[str, Any] = {
        "discord_id": application["discord_id"],
        "discord_name": application["discord_name"],
        "ign": application.get("ign") or application["discord_name"],
        "uid": application.get("uid") or None,
        "join_date": accepted_at.date(),
        "status": "active",
        "has_420_tag": False,
        "rank_current": ENTRY_RANK.name,
        "frozen_days": 0,
        "counting_since": None,
        "source": "application",
        "needs_resolution": False,
        "resolution_status": "resolved_auto",
        "resolved_at": accepted_at,
        "resolved_by": None,
    }
    record.update(derived_fields(record, accepted_at))
    return record


async def upsert_member_from_application(
    application: dict[str, Any], accepted_at: datetime
) -> dict[str, Any]:
    """Create or refresh the roster row for an accepted applicant."""
    if not application.get("discord_id"):
        raise ValidationError("application.discord_id is missing")
    record = application_member_record(application, accepted_at)
    with translate_store_errors("Upsert clan member from application"):
        return await upsert_clan_member_by_discord_id(record, now=accepted_at)


async def resolve_member_manually(
    member_id: int,
    discord_id: str,
    *,
    actor_id: str | None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Link a roster row to a guild member picked by staff."""
    now = now or _utc_now()
    if not discord_id:
        raise ValidationError("selected_discord_id is required")
    try:
        api_client = await get_api_client()
        guild_member = await api_client.get_member(discord_id)
    except DiscordAPIError as e:
        raise ExternalServiceError(f"Guild lookup failed: {e.message}") from e
    if guild_member is None:
        raise ValidationError(
            "selected_discord_id is not in guild", code="DISCORD_NOT_IN_GUILD"
        )

    with translate_store_errors("Resolve clan member"):
        existing = await get_clan_member_by_id(member_id)
        if existing is None:
            raise NotFoundError("Member row not found")
        updated = await update_clan_member_fields(
            member_id,
            {
                "discord_id": discord_id,
                "needs_resolution": False,
                "resolution_status": "resolved_manual",
                "resolved_at": now,
                "resolved_by": actor_id,
            },
            now=now,
        )
    if updated is None:
        raise NotFoundError("Member row not found")

    await write_audit_log(
        "clan_member_resolved_manual",
        actor_id=actor_id,
        target_id=member_id,
        details={
            "old_discord_id": existing.get("discord_id"),
            "new_discord_id": discord_id,
            "resolution_status": "resolved_manual",
        },
    )
    return project_member(updated, now)


async def get_member(member_id: int, now: datetime | None = None) -> dict[str, Any]:
    with translate_store_errors("Fetch clan member"):
        member = await get_clan_member_by_id(member_id)
    if member is None:
        raise NotFoundError("Member not found")
    return project_member(member, now)


async def list_members(
    *,
    page: int = 1,
    search: str | None = None,
    status: str | None = None,
    has_tag: bool | None = None,
    promotion_due: bool | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or _utc_now()
    page = max(1, page)
    with translate_store_errors("List clan members"):
        rows, total = await list_clan_members(
            page=page,
            page_size=CLAN_LIST_PAGE_SIZE,
            search=(search or "").strip() or None,
            status=status,
            has_tag=has_tag,
            promotion_due=promotion_due,
            now=now,
        )
        promotion_due_count = await count_clan_members(promotion_due=True, now=now)
        unresolved_count = await count_clan_members(needs_resolution=True)
    return {
        "members": [project_member(row, now) for row in rows],
        "total": total,
        "page": page,
        "page_size": CLAN_LIST_PAGE_SIZE,
        "total_pages": (total + CLAN_LIST_PAGE_SIZE - 1) // CLAN_LIST_PAGE_SIZE,
        "promotion_due_count": promotion_due_count,
        "unresolved_count": unresolved_count,
    }


async def apply_promotion(
    member_id: int, to_rank: str, *, now: datetime | None = None
) -> dict[str, Any]:
    """Raise a member to to_rank (never lower) and rewrite the projection."""
    now = now or _utc_now()
    with translate_store_errors("Apply promotion"):
        async with get_session() as session:
            try:
                existing = await get_clan_member_by_id(
                    member_id, for_update=True, session=session
                )
                if existing is None:
                    raise NotFoundError("Member not found")
                index = max(rank_index(existing["rank_current"]), rank_index(to_rank))
                values: dict[str, Any] = {"rank_current": RANK_LADDER[index].name}
                values.update(derived_fields({**existing, **values}, now))
                updated = await update_clan_member_fields(
                    member_id, values, now=now, session=session
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    return updated

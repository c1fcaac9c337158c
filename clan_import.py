"""Helpers for importing the clan list and resolving members against the guild."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from config import CLAN_TAG_MARKER, IMPORT_COOLDOWN_SECONDS, IMPORT_MAX_ROWS
from db import (
    list_unresolved_clan_members,
    translate_store_errors,
    update_clan_member_fields,
    write_audit_log,
)
from discord_api import DiscordAPIError, get_api_client
from errors import (
    BatchTooLargeError,
    ClanServiceError,
    ExternalServiceError,
    PartialBatchError,
    RateLimitedError,
    ValidationError,
)
from name_matching import find_member, has_clan_tag, resolve_single, search_candidates
from ranks import derive_rank_fields, kept_rank, normalize_rank_name
from roster import (
    derived_fields,
    is_counting,
    parse_join_date,
    start_of_day,
    upsert_member_by_uid,
)

logger = logging.getLogger(__name__)

COLUMN_ALIASES: dict[str, str] = {
    "discord name": "discord_name",
    "discord_name": "discord_name",
    "ingame name": "ign",
    "ingame_name": "ign",
    "in-game name": "ign",
    "ign": "ign",
    "uid": "uid",
    "join date": "join_date",
    "join_date": "join_date",
    "time in clan": "time_in_clan",
    "time in clan (days)": "time_in_clan",
    "time_in_clan": "time_in_clan",
    "role given": "rank_current",
    "role_given": "rank_current",
    "role": "rank_current",
    "rank": "rank_current",
    "rank_current": "rank_current",
    "status": "status",
}


# Tenure state of a row already linked to the guild; an import that cannot
# resolve the row again leaves these as they are.
LINKED_TENURE_FIELDS = (
    "status",
    "has_420_tag",
    "frozen_days",
    "counting_since",
    "rank_current",
    "rank_next",
    "promote_eligible",
    "promote_reason",
)


class CooldownLimiter:
    """Per-key cooldown kept in process memory.

    Best-effort only: state is lost on restart and is not shared between
    processes.
    """

    def __init__(
        self, cooldown_seconds: float, clock: Callable[[], float] = time.monotonic
    ):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_seen: dict[str, float] = {}

    def hit(self, key: str) -> None:
        """Record an attempt for key, or raise if it is still cooling down."""
        now = self._clock()
        last = self._last_seen.get(key)
        if last is not None and now - last < self.cooldown_seconds:
            retry_after = int(self.cooldown_seconds - (now - last)) + 1
            raise RateLimitedError(
                "Please wait before importing again.", retry_after=retry_after
            )
        self._last_seen[key] = now

    def reset(self) -> None:
        self._last_seen.clear()


import_limiter = CooldownLimiter(IMPORT_COOLDOWN_SECONDS)


@dataclass
class ImportOutcome:
    imported: int = 0
    updated: int = 0
    unresolved: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def partial(self) -> PartialBatchError | None:
        return PartialBatchError(self.errors) if self.errors else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "imported": self.imported,
            "updated": self.updated,
            "unresolved": self.unresolved,
            "errors": list(self.errors),
        }


class _RowError(Exception):
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_row(raw: dict[str, Any]) -> dict[str, str | None]:
    """Map spreadsheet headers onto canonical names; unknown headers are dropped."""
    out: dict[str, str | None] = {}
    for key, value in raw.items():
        mapped = COLUMN_ALIASES.get(str(key).strip().lower())
        if mapped:
            out[mapped] = None if value is None else str(value).strip()
    return out


def _parse_days(raw: str | None) -> int:
    if not raw:
        return 0
    try:
        return max(0, int(float(raw)))
    except ValueError:
        return 0


def build_import_record(
    raw: dict[str, Any],
    directory: list[dict[str, Any]],
    now: datetime,
) -> tuple[dict[str, Any], bool]:
    """Roster values for one spreadsheet row; returns (record, resolved)."""
    row = normalize_row(raw)
    if not row.get("discord_name"):
        raise _RowError("missing Discord name")
    if not row.get("ign"):
        raise _RowError("missing Ingame name")
    if not row.get("uid"):
        raise _RowError("missing UID")
    join_date = parse_join_date(row.get("join_date"))
    if join_date is None:
        raise _RowError("invalid or missing Join date")

    status = "inactive" if (row.get("status") or "").lower() == "inactive" else "active"
    declared_rank = normalize_rank_name(row.get("rank_current"))

    discord_id = None
    has_tag = False
    if directory:
        resolution = resolve_single(row["discord_name"], directory)
        discord_id = resolution.id
        if discord_id:
            member = find_member(directory, discord_id)
            has_tag = bool(member) and has_clan_tag(member, CLAN_TAG_MARKER)

    counting_since = start_of_day(join_date) if is_counting(status, has_tag) else None
    frozen_days = 0 if counting_since else _parse_days(row.get("time_in_clan"))
    projection = derive_rank_fields(
        status=status,
        has_tag=has_tag,
        frozen_days=frozen_days,
        counting_since=counting_since,
        current_rank=declared_rank,
        now=now,
    )
    final_rank = kept_rank(declared_rank, projection.tenure_days)

    record: dict[str, Any] = {
        "discord_name": row["discord_name"],
        "ign": row["ign"],
        "uid": row["uid"],
        "join_date": join_date,
        "status": status,
        "has_420_tag": has_tag,
        "rank_current": final_rank.name,
        "frozen_days": frozen_days,
        "counting_since": counting_since,
        "source": "csv",
    }
    record.update(derived_fields(record, now))
    if discord_id:
        # Unresolved rows leave any existing link on the row untouched.
        record.update(
            discord_id=discord_id,
            needs_resolution=False,
            resolution_status="resolved_auto",
            resolved_at=now,
            resolved_by=None,
        )
    return record, discord_id is not None


async def fetch_directory() -> list[dict[str, Any]]:
    api_client = await get_api_client()
    return await api_client.list_all_members()


async def import_rows(
    rows: Any,
    *,
    actor_id: str,
    now: datetime | None = None,
    limiter: CooldownLimiter | None = None,
) -> ImportOutcome:
    """
    Import spreadsheet rows into the roster, upserting by uid.

    Each row is validated, resolved and written on its own; a bad row adds a
    "Row N: ..." entry to the outcome and the batch carries on.
    """
    if not isinstance(rows, list) or not rows:
        raise ValidationError("rows is required (non-empty array)")
    if len(rows) > IMPORT_MAX_ROWS:
        raise BatchTooLargeError(
            f"Maximum {IMPORT_MAX_ROWS} rows allowed", max_rows=IMPORT_MAX_ROWS
        )
    (limiter or import_limiter).hit(actor_id)

    now = now or _utc_now()
    try:
        directory = await fetch_directory()
    except (DiscordAPIError, ValueError) as e:
        logger.error("Failed to fetch guild members: %s", e)
        directory = []

    outcome = ImportOutcome()
    for index, raw in enumerate(rows, 1):
        if not isinstance(raw, dict):
            outcome.errors.append(f"Row {index}: not an object")
            continue
        try:
            record, resolved = build_import_record(raw, directory, now)
        except _RowError as e:
            outcome.errors.append(f"Row {index}: {e}")
            continue
        try:
            _, inserted = await upsert_member_by_uid(
                record,
                keep_when_linked=() if resolved else LINKED_TENURE_FIELDS,
                now=now,
            )
        except ClanServiceError as e:
            outcome.errors.append(f"Row {index}: upsert failed: {e.message}")
            continue
        if not resolved:
            outcome.unresolved += 1
        if inserted:
            outcome.imported += 1
        else:
            outcome.updated += 1

    if outcome.partial:
        logger.warning("Clan list import by %s: %s", actor_id, outcome.partial)
    logger.info(
        "Imported clan list: %s new, %s updated, %s unresolved, %s error(s)",
        outcome.imported,
        outcome.updated,
        outcome.unresolved,
        len(outcome.errors),
    )
    await write_audit_log(
        "clan_list_imported",
        actor_id=actor_id,
        details={
            "imported": outcome.imported,
            "updated": outcome.updated,
            "unresolved": outcome.unresolved,
            "error_count": len(outcome.errors),
        },
    )
    return outcome


async def _require_directory() -> list[dict[str, Any]]:
    try:
        directory = await fetch_directory()
    except (DiscordAPIError, ValueError) as e:
        raise ExternalServiceError(f"Failed to fetch guild members: {e}") from e
    if not directory:
        raise ExternalServiceError("Guild member directory is unavailable")
    return directory


async def bulk_resolve(
    *, actor_id: str, now: datetime | None = None
) -> dict[str, Any]:
    """Retry name resolution for every roster row without a discord id."""
    now = now or _utc_now()
    with translate_store_errors("Fetch unresolved members"):
        unresolved = await list_unresolved_clan_members()

    counts = {"resolved": 0, "skipped": 0, "ambiguous": 0, "not_found": 0, "db_error": 0}
    details: list[dict[str, Any]] = []
    if not unresolved:
        return {"ok": True, "total_checked": 0, **counts, "details": details}

    directory = await _require_directory()
    for row in unresolved:
        name = row["discord_name"]
        if row.get("discord_id"):
            counts["skipped"] += 1
            details.append({"id": row["id"], "discord_name": name, "result": "already_has_id"})
            continue

        resolution = resolve_single(name, directory)
        if resolution.multiple:
            counts["ambiguous"] += 1
            details.append({"id": row["id"], "discord_name": name, "result": "ambiguous"})
            continue
        if not resolution.resolved:
            counts["not_found"] += 1
            details.append({"id": row["id"], "discord_name": name, "result": "not_found"})
            continue

        try:
            with translate_store_errors("Resolve member"):
                await update_clan_member_fields(
                    row["id"],
                    {
                        "discord_id": resolution.id,
                        "needs_resolution": False,
                        "resolution_status": "resolved_auto",
                        "resolved_at": now,
                        "resolved_by": None,
                    },
                    now=now,
                )
        except ClanServiceError as e:
            counts["db_error"] += 1
            details.append(
                {"id": row["id"], "discord_name": name, "result": f"db_error: {e.message}"}
            )
            continue
        counts["resolved"] += 1
        details.append({"id": row["id"], "discord_name": name, "result": "resolved"})

    await write_audit_log(
        "clan_list_bulk_resolve",
        actor_id=actor_id,
        details={"total_unresolved": len(unresolved), **counts},
    )
    return {"ok": True, "total_checked": len(unresolved), **counts, "details": details}


async def search_directory(
    query: str, *, actor_id: str, limit: int = 20
) -> list[dict[str, Any]]:
    """Ranked guild members for a staff lookup."""
    query = (query or "").strip()
    if not query:
        return []
    directory = await _require_directory()
    candidates = [
        {
            "discord_id": candidate.discord_id,
            "label": candidate.display_name,
            "sublabel": f"@{candidate.username}"
            + (f" (nick: {candidate.nick})" if candidate.nick else ""),
            "username": candidate.username,
            "nick": candidate.nick,
        }
        for candidate in search_candidates(directory, query, limit)
    ]
    await write_audit_log(
        "guild_member_search",
        actor_id=actor_id,
        details={"query": query, "result_count": len(candidates)},
    )
    return candidates

"""Promotion queue: build, confirm and process rank promotions.

Items move queued -> confirmed -> processed, queued -> removed, or
confirmed -> failed. Every transition is a conditional update on the item's
current status, so two overlapping requests cannot move the same item twice.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from config import PROMOTION_ANNOUNCE_CHANNEL_ID, PROMOTION_CONFIRM_MIN_BATCH
from db import (
    confirm_resolved_queued_items,
    count_promotion_queue,
    get_promotion_queue_item,
    insert_promotion_queue_item,
    list_active_tagged_clan_members,
    list_promotion_queue,
    remove_open_queue_items,
    transition_promotion_queue_item,
    translate_store_errors,
    write_audit_log,
)
from discord_api import get_api_client
from errors import (
    BatchTooSmallError,
    ClanServiceError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ranks import RANK_LADDER, derive_rank_fields, rank_by_name, rank_index
from roster import apply_promotion

logger = logging.getLogger(__name__)

QUEUE_STATUSES = ("queued", "confirmed", "processed", "failed", "removed")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def list_queue() -> dict[str, Any]:
    """Open and recent items with their member identity, plus status counts."""
    with translate_store_errors("List promotion queue"):
        items = await list_promotion_queue()
    counts = {status: 0 for status in QUEUE_STATUSES}
    for item in items:
        counts[item["status"]] = counts.get(item["status"], 0) + 1
    counts["unresolved"] = sum(
        1
        for item in items
        if item["status"] in ("queued", "confirmed") and not item.get("discord_id")
    )
    return {"items": items, "counts": counts}


async def build_queue(
    *, actor_id: str | None, now: datetime | None = None
) -> dict[str, int]:
    """Queue every active, tagged member whose earned rank is above their current one."""
    now = now or _utc_now()
    added = 0
    with translate_store_errors("Build promotion queue"):
        members = await list_active_tagged_clan_members()
        for member in members:
            projection = derive_rank_fields(
                status=member["status"],
                has_tag=member["has_420_tag"],
                frozen_days=member.get("frozen_days"),
                counting_since=member.get("counting_since"),
                current_rank=member.get("rank_current"),
                now=now,
            )
            if not projection.promotion_eligible:
                continue
            inserted = await insert_promotion_queue_item(
                member_id=member["id"],
                from_rank=RANK_LADDER[rank_index(member.get("rank_current"))].name,
                to_rank=projection.earned_rank.name,
                tenure_days=projection.tenure_days,
                now=now,
            )
            if inserted:
                added += 1
        total_queued = await count_promotion_queue("queued")

    logger.info("Promotion queue built: %s added, %s queued", added, total_queued)
    await write_audit_log(
        "promotion_queue_built",
        actor_id=actor_id,
        details={"queued_added_count": added, "total_queued_count": total_queued},
    )
    return {"queued_added_count": added, "total_queued_count": total_queued}


async def clear_queue(
    *, actor_id: str | None, confirm: bool, now: datetime | None = None
) -> dict[str, int]:
    """Mark every open item removed. The caller must confirm explicitly."""
    if confirm is not True:
        raise ValidationError("Clearing the queue requires confirm=true")
    with translate_store_errors("Clear promotion queue"):
        removed = await remove_open_queue_items(now=now or _utc_now())
    await write_audit_log(
        "promotion_queue_cleared", actor_id=actor_id, details={"removed_count": removed}
    )
    return {"removed_count": removed}


async def remove_item(
    item_id: int, *, actor_id: str | None, now: datetime | None = None
) -> dict[str, Any]:
    with translate_store_errors("Remove promotion queue item"):
        item = await get_promotion_queue_item(item_id)
        if item is None:
            raise NotFoundError("Queue item not found")
        moved = await transition_promotion_queue_item(
            item_id, from_status="queued", to_status="removed", now=now
        )
    if not moved:
        raise InvalidTransitionError(
            f"Only queued items can be removed (item is {item['status']})"
        )
    await write_audit_log(
        "promotion_queue_item_removed", actor_id=actor_id, target_id=item_id
    )
    return {"ok": True, "id": item_id, "status": "removed"}


async def reset_failed_item(
    item_id: int, *, actor_id: str | None, now: datetime | None = None
) -> dict[str, Any]:
    """Put a failed item back to confirmed so the next process run retries it."""
    with translate_store_errors("Reset promotion queue item"):
        item = await get_promotion_queue_item(item_id)
        if item is None:
            raise NotFoundError("Queue item not found")
        moved = await transition_promotion_queue_item(
            item_id,
            from_status="failed",
            to_status="confirmed",
            values={"error": None},
            now=now,
        )
    if not moved:
        raise InvalidTransitionError(
            f"Only failed items can be reset (item is {item['status']})"
        )
    await write_audit_log(
        "promotion_queue_item_reset", actor_id=actor_id, target_id=item_id
    )
    return {"ok": True, "id": item_id, "status": "confirmed"}


async def confirm_queue(
    *, actor_id: str | None, now: datetime | None = None
) -> dict[str, int]:
    """
    Confirm every queued item whose member has a discord id.

    Refuses batches smaller than PROMOTION_CONFIRM_MIN_BATCH. Items without a
    discord id stay queued and are reported as unresolved.
    """
    now = now or _utc_now()
    with translate_store_errors("Confirm promotion queue"):
        ready = await count_promotion_queue("queued", resolved=True)
        unresolved = await count_promotion_queue("queued", resolved=False)
        if ready < PROMOTION_CONFIRM_MIN_BATCH:
            raise BatchTooSmallError(
                f"At least {PROMOTION_CONFIRM_MIN_BATCH} resolved queued items are required",
                remaining=PROMOTION_CONFIRM_MIN_BATCH - ready,
                unresolved_count=unresolved,
            )
        confirmed = await confirm_resolved_queued_items(actor_id=actor_id, now=now)

    await write_audit_log(
        "promotion_queue_confirmed",
        actor_id=actor_id,
        details={"confirmed_count": confirmed, "unresolved_count": unresolved},
    )
    return {"confirmed_count": confirmed, "unresolved_count": unresolved}


def format_announcement(promoted: list[dict[str, Any]]) -> str:
    lines = ["🎖️ **Promotions**", ""]
    for item in promoted:
        mention = f"<@{item['discord_id']}>" if item.get("discord_id") else item["discord_name"]
        lines.append(f"{mention}: {item['from_rank']} → **{item['to_rank']}**")
    lines.append("")
    lines.append("Congratulations!")
    return "\n".join(lines)


async def _process_item(
    api_client: Any, item: dict[str, Any], *, now: datetime
) -> tuple[bool, str | None]:
    """Apply one confirmed promotion; returns (processed, error)."""
    if not item.get("discord_id"):
        return False, "member has no discord id"
    target = rank_by_name(item["to_rank"])
    if target.role_id and not await api_client.assign_role(
        item["discord_id"], target.role_id
    ):
        return False, f"failed to assign {target.name} role"

    previous = rank_by_name(item["from_rank"])
    if previous.role_id and previous.role_id != target.role_id:
        if not await api_client.remove_role(item["discord_id"], previous.role_id):
            logger.warning(
                "Could not remove %s role from %s", previous.name, item["discord_id"]
            )

    await apply_promotion(item["member_id"], target.name, now=now)
    return True, None


async def process_queue(
    *, actor_id: str | None, now: datetime | None = None
) -> dict[str, Any]:
    """
    Apply roles for every confirmed item and announce the promotions.

    Items whose role assignment fails move to failed with the error kept on
    the item. The announcement is best effort and reported as a flag.
    """
    now = now or _utc_now()
    with translate_store_errors("Load confirmed promotions"):
        items = await list_promotion_queue(statuses=("confirmed",))

    api_client = await get_api_client()
    promoted: list[dict[str, Any]] = []
    failures: list[dict[str, Any]] = []
    for item in items:
        try:
            ok, error = await _process_item(api_client, item, now=now)
        except ClanServiceError as e:
            ok, error = False, e.message
        if ok:
            with translate_store_errors("Mark promotion processed"):
                moved = await transition_promotion_queue_item(
                    item["id"],
                    from_status="confirmed",
                    to_status="processed",
                    values={"processed_by": actor_id, "processed_at": now, "error": None},
                    now=now,
                )
            if moved:
                promoted.append(item)
            else:
                logger.info("Queue item %s was already handled elsewhere", item["id"])
            continue
        with translate_store_errors("Mark promotion failed"):
            moved = await transition_promotion_queue_item(
                item["id"],
                from_status="confirmed",
                to_status="failed",
                values={"processed_by": actor_id, "processed_at": now, "error": error},
                now=now,
            )
        if moved:
            failures.append({"id": item["id"], "discord_name": item["discord_name"], "error": error})

    announcement_posted = False
    if promoted:
        if PROMOTION_ANNOUNCE_CHANNEL_ID:
            announcement_posted = await api_client.post_message(
                PROMOTION_ANNOUNCE_CHANNEL_ID, format_announcement(promoted)
            )
        else:
            logger.warning("PROMOTION_ANNOUNCE_CHANNEL_ID not set; skipping announcement")

    result = {
        "processed_count": len(promoted),
        "failed_count": len(failures),
        "announcement_posted": announcement_posted,
        "failures": failures,
    }
    logger.info(
        "Processed promotion queue: %s processed, %s failed, announcement=%s",
        len(promoted),
        len(failures),
        announcement_posted,
    )
    await write_audit_log(
        "promotion_queue_processed",
        actor_id=actor_id,
        details={
            "processed_count": len(promoted),
            "failed_count": len(failures),
            "announcement_posted": announcement_posted,
            "processed_ids": [item["id"] for item in promoted],
            "failed_ids": [failure["id"] for failure in failures],
        },
    )
    return result

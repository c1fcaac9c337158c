"""Application review: pending -> accepted | rejected, plus the roster side effects."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from config import DISCORD_APPLICANT_ROLE_ID, DISCORD_MEMBER_ROLE_ID
from db import (
    get_application_by_id,
    list_applications as db_list_applications,
    transition_application,
    translate_store_errors,
    write_audit_log,
)
from discord_api import get_api_client
from errors import (
    ClanServiceError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from roster import upsert_member_from_application

logger = logging.getLogger(__name__)

APPLICATION_STATUSES = ("pending", "accepted", "rejected")
REVIEW_ACTIONS = ("accept", "reject", "retry_create_clan_member")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _lines(*parts: str | None) -> str:
    return "\n".join(part for part in parts if part)


async def get_application(application_id: int) -> dict[str, Any]:
    with translate_store_errors("Fetch application"):
        application = await get_application_by_id(application_id)
    if application is None:
        raise NotFoundError("Application not found")
    return application


async def list_applications(status: str | None = None) -> list[dict[str, Any]]:
    if status is not None and status not in APPLICATION_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(APPLICATION_STATUSES)}")
    with translate_store_errors("List applications"):
        return await db_list_applications(status)


async def _load_reviewable(application_id: int) -> dict[str, Any]:
    application = await get_application(application_id)
    if not application.get("discord_id"):
        raise ValidationError("Application has no discord_id; cannot continue")
    return application


async def _post_log(application: dict[str, Any], content: str) -> bool:
    api_client = await get_api_client()
    return await api_client.post_app_log(
        application.get("log_thread_id"), application["id"], content
    )


async def _try_upsert(
    application: dict[str, Any], accepted_at: datetime
) -> tuple[dict[str, Any] | None, str | None]:
    try:
        member = await upsert_member_from_application(application, accepted_at)
    except ClanServiceError as e:
        logger.error(
            "Clan member upsert failed for application %s: %s", application["id"], e
        )
        return None, e.message
    return member, None


async def accept(
    application_id: int,
    *,
    actor_id: str,
    note: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Accept a pending application.

    The status change happens first and stands on its own. The roster upsert
    and both role changes are attempted afterwards and each is reported in
    the result, so a failed upsert can be retried without another accept.
    """
    now = now or _utc_now()
    application = await _load_reviewable(application_id)
    with translate_store_errors("Accept application"):
        accepted = await transition_application(
            application_id,
            from_status="pending",
            to_status="accepted",
            values={
                "reviewer_id": actor_id,
                "reviewer_note": note or None,
                "accepted_at": now,
                "accepted_by": actor_id,
            },
            now=now,
        )
    if accepted is None:
        raise InvalidTransitionError(
            f"Application is already {application['status']}",
            status=application["status"],
        )
    logger.info("Application %s accepted by %s", application_id, actor_id)

    member, upsert_error = await _try_upsert(accepted, now)
    if upsert_error:
        await _post_log(
            accepted,
            _lines(
                "⚠️ **Application accepted but clan member creation failed**",
                f"Error: {upsert_error}",
                'Use "Retry" to try again.',
            ),
        )
        await write_audit_log(
            "clan_member_upsert_failed_on_accept",
            actor_id=actor_id,
            target_id=application_id,
            details={"discord_id": accepted["discord_id"], "error": upsert_error},
        )

    api_client = await get_api_client()
    role_assigned = False
    if DISCORD_MEMBER_ROLE_ID:
        role_assigned = await api_client.assign_role(
            accepted["discord_id"], DISCORD_MEMBER_ROLE_ID
        )
    role_removed = False
    if DISCORD_APPLICANT_ROLE_ID:
        role_removed = await api_client.remove_role(
            accepted["discord_id"], DISCORD_APPLICANT_ROLE_ID
        )

    await _post_log(
        accepted,
        _lines(
            "✅ **Application accepted**",
            f"Accepted by: <@{actor_id}>",
            f"Note: {note}" if note else None,
        ),
    )
    await _post_log(
        accepted,
        _lines(
            "🔄 **Role update**",
            f"Member role added: {'✓' if role_assigned else '✗'}",
            f"Applicant role removed: {'✓' if role_removed else '✗'}",
            "⚠️ Role update incomplete, check manually"
            if not (role_assigned and role_removed)
            else None,
        ),
    )

    await write_audit_log(
        "application_accepted",
        actor_id=actor_id,
        target_id=application_id,
        details={
            "discord_id": accepted["discord_id"],
            "note": note or None,
            "clan_member_upsert_ok": upsert_error is None,
            "clan_member_id": member["id"] if member else None,
            "role_assigned": role_assigned,
            "role_removed": role_removed,
        },
    )
    return {
        "ok": True,
        "status": "accepted",
        "role_assigned": role_assigned,
        "role_removed": role_removed,
        "clan_member_upsert_ok": upsert_error is None,
        "clan_member_error": upsert_error,
        "clan_member_id": member["id"] if member else None,
    }


async def reject(
    application_id: int,
    *,
    actor_id: str,
    note: str | None = None,
    deny_reason: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or _utc_now()
    application = await _load_reviewable(application_id)
    with translate_store_errors("Reject application"):
        rejected = await transition_application(
            application_id,
            from_status="pending",
            to_status="rejected",
            values={
                "reviewer_id": actor_id,
                "reviewer_note": note or None,
                "deny_reason": deny_reason or None,
                "denied_at": now,
                "denied_by": actor_id,
            },
            now=now,
        )
    if rejected is None:
        raise InvalidTransitionError(
            f"Application is already {application['status']}",
            status=application["status"],
        )
    logger.info("Application %s rejected by %s", application_id, actor_id)

    await _post_log(
        rejected,
        _lines(
            "❌ **Application denied**",
            f"Denied by: <@{actor_id}>",
            f"Reason: {deny_reason}" if deny_reason else None,
            f"Note: {note}" if note else None,
        ),
    )
    await write_audit_log(
        "application_denied",
        actor_id=actor_id,
        target_id=application_id,
        details={"note": note or None, "deny_reason": deny_reason or None},
    )
    return {"ok": True, "status": "rejected"}


async def retry_upsert(application_id: int, *, actor_id: str) -> dict[str, Any]:
    """Re-run only the roster upsert for an accepted application."""
    application = await _load_reviewable(application_id)
    if application["status"] != "accepted":
        raise InvalidTransitionError(
            "Only accepted applications can retry clan member creation",
            status=application["status"],
        )
    accepted_at = application.get("accepted_at") or _utc_now()

    member, upsert_error = await _try_upsert(application, accepted_at)
    await write_audit_log(
        "clan_member_upsert_retry",
        actor_id=actor_id,
        target_id=application_id,
        details={
            "discord_id": application["discord_id"],
            "upserted": upsert_error is None,
            "clan_member_id": member["id"] if member else None,
            "error": upsert_error,
        },
    )
    if upsert_error:
        await _post_log(
            application,
            _lines("⚠️ **Retry create clan member failed**", f"Error: {upsert_error}"),
        )
        raise StoreError(
            "Retry create clan member failed",
            status="accepted",
            clan_member_upsert_ok=False,
            clan_member_error=upsert_error,
        )

    await _post_log(
        application,
        _lines(
            "✅ **Retry create clan member succeeded**",
            f"Clan member ID: {member['id']}",
        ),
    )
    return {
        "ok": True,
        "status": "accepted",
        "clan_member_upsert_ok": True,
        "clan_member_error": None,
        "clan_member_id": member["id"],
    }


async def review(
    application_id: int,
    action: str,
    *,
    actor_id: str,
    note: str | None = None,
    deny_reason: str | None = None,
) -> dict[str, Any]:
    if action not in REVIEW_ACTIONS:
        raise ValidationError(
            "action must be one of accept, reject, retry_create_clan_member"
        )
    if action == "accept":
        return await accept(application_id, actor_id=actor_id, note=note)
    if action == "reject":
        return await reject(
            application_id, actor_id=actor_id, note=note, deny_reason=deny_reason
        )
    return await retry_upsert(application_id, actor_id=actor_id)

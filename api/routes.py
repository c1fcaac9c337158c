"""
Staff API routes.

Endpoints:
- GET   /api/clan-list/members                 paged roster with projections
- POST  /api/clan-list/members                 manual member entry
- GET   /api/clan-list/members/{id}            one roster row
- PATCH /api/clan-list/members/{id}            staff edit (freeze/unfreeze aware)
- POST  /api/clan-list/members/{id}/resolve    link a row to a guild member
- POST  /api/clan-list/import                  spreadsheet rows, upsert by uid
- POST  /api/clan-list/bulk-resolve            retry resolution for unlinked rows
- GET   /api/guild-members/search              ranked guild member lookup
- GET   /api/promotion-queue                   queue items and counts
- POST  /api/promotion-queue/build|confirm|process|clear
- POST  /api/promotion-queue/{id}/remove|reset
- GET   /api/applications                      list applications
- GET   /api/applications/{id}                 one application
- POST  /api/applications/{id}/review          accept, reject or retry the upsert

Every route requires the staff role; errors are ClanServiceError subclasses
rendered by the handler installed in main.py.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

import applications
import clan_import
import promotion_queue
import roster
from api.auth import StaffUser, require_staff

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", dependencies=[Depends(require_staff)])


class ResolveRequest(BaseModel):
    selected_discord_id: str | None = None


class ImportRequest(BaseModel):
    rows: Any = None


class ClearRequest(BaseModel):
    confirm: bool = False


class ReviewRequest(BaseModel):
    action: str = Field(..., description="accept|reject|retry_create_clan_member")
    note: str | None = None
    deny_reason: str | None = None


# ── Roster ──────────────────────────────────────────────────


@router.get("/clan-list/members")
async def list_members(
    page: int = Query(1, ge=1),
    search: str | None = None,
    status: str | None = None,
    has_tag: bool | None = None,
    promotion_due: bool | None = None,
) -> dict[str, Any]:
    return await roster.list_members(
        page=page,
        search=search,
        status=status,
        has_tag=has_tag,
        promotion_due=promotion_due,
    )


@router.post("/clan-list/members")
async def create_member(
    payload: dict[str, Any] = Body(...),
    staff: StaffUser = Depends(require_staff),
) -> dict[str, Any]:
    member = await roster.create_member(payload, actor_id=staff.discord_id)
    return {"ok": True, "member": member}


@router.get("/clan-list/members/{member_id}")
async def get_member(member_id: int) -> dict[str, Any]:
    return {"member": await roster.get_member(member_id)}


@router.patch("/clan-list/members/{member_id}")
async def update_member(
    member_id: int,
    changes: dict[str, Any] = Body(...),
    staff: StaffUser = Depends(require_staff),
) -> dict[str, Any]:
    member = await roster.update_member(member_id, changes, actor_id=staff.discord_id)
    return {"ok": True, "member": member}


@router.post("/clan-list/members/{member_id}/resolve")
async def resolve_member(
    member_id: int,
    body: ResolveRequest,
    staff: StaffUser = Depends(require_staff),
) -> dict[str, Any]:
    member = await roster.resolve_member_manually(
        member_id, body.selected_discord_id or "", actor_id=staff.discord_id
    )
    return {"ok": True, "member": member}


@router.post("/clan-list/import")
async def import_clan_list(
    body: ImportRequest, staff: StaffUser = Depends(require_staff)
) -> dict[str, Any]:
    outcome = await clan_import.import_rows(body.rows, actor_id=staff.discord_id)
    return outcome.to_dict()


@router.post("/clan-list/bulk-resolve")
async def bulk_resolve(staff: StaffUser = Depends(require_staff)) -> dict[str, Any]:
    return await clan_import.bulk_resolve(actor_id=staff.discord_id)


@router.get("/guild-members/search")
async def search_guild_members(
    q: str = "",
    limit: int = Query(20, ge=1, le=50),
    staff: StaffUser = Depends(require_staff),
) -> dict[str, Any]:
    candidates = await clan_import.search_directory(
        q, actor_id=staff.discord_id, limit=limit
    )
    return {"candidates": candidates}


# ── Promotion queue ─────────────────────────────────────────


@router.get("/promotion-queue")
async def get_promotion_queue() -> dict[str, Any]:
    return await promotion_queue.list_queue()


@router.post("/promotion-queue/build")
async def build_promotion_queue(
    staff: StaffUser = Depends(require_staff),
) -> dict[str, Any]:
    return {"ok": True, **await promotion_queue.build_queue(actor_id=staff.discord_id)}


@router.post("/promotion-queue/confirm")
async def confirm_promotion_queue(
    staff: StaffUser = Depends(require_staff),
) -> dict[str, Any]:
    return {"ok": True, **await promotion_queue.confirm_queue(actor_id=staff.discord_id)}


@router.post("/promotion-queue/process")
async def process_promotion_queue(
    staff: StaffUser = Depends(require_staff),
) -> dict[str, Any]:
    return {"ok": True, **await promotion_queue.process_queue(actor_id=staff.discord_id)}


@router.post("/promotion-queue/clear")
async def clear_promotion_queue(
    body: ClearRequest, staff: StaffUser = Depends(require_staff)
) -> dict[str, Any]:
    result = await promotion_queue.clear_queue(
        actor_id=staff.discord_id, confirm=body.confirm
    )
    return {"ok": True, **result}


@router.post("/promotion-queue/{item_id}/remove")
async def remove_promotion_item(
    item_id: int, staff: StaffUser = Depends(require_staff)
) -> dict[str, Any]:
    return await promotion_queue.remove_item(item_id, actor_id=staff.discord_id)


@router.post("/promotion-queue/{item_id}/reset")
async def reset_promotion_item(
    item_id: int, staff: StaffUser = Depends(require_staff)
) -> dict[str, Any]:
    return await promotion_queue.reset_failed_item(item_id, actor_id=staff.discord_id)


# ── Applications ────────────────────────────────────────────


@router.get("/applications")
async def list_applications(status: str | None = None) -> dict[str, Any]:
    return {"applications": await applications.list_applications(status)}


@router.get("/applications/{application_id}")
async def get_application(application_id: int) -> dict[str, Any]:
    return {"application": await applications.get_application(application_id)}


@router.post("/applications/{application_id}/review")
async def review_application(
    application_id: int,
    body: ReviewRequest,
    staff: StaffUser = Depends(require_staff),
) -> dict[str, Any]:
    return await applications.review(
        application_id,
        body.action,
        actor_id=staff.discord_id,
        note=body.note,
        deny_reason=body.deny_reason,
    )

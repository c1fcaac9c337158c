from datetime import date, datetime, timedelta, timezone
import unittest

try:
    import sqlalchemy  # noqa: F401
except Exception:
    raise unittest.SkipTest("sqlalchemy not available")

from clan_import import LINKED_TENURE_FIELDS
from db import (
    count_clan_members,
    get_clan_member_by_id,
    insert_clan_member,
    list_clan_members,
    list_unresolved_clan_members,
    update_clan_member_fields,
    upsert_clan_member_by_discord_id,
    upsert_clan_member_by_uid,
)
from roster import application_member_record
from tests._db_harness import DBTestCase

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record(uid: str, **overrides):
    record = {
        "discord_name": f"name-{uid}",
        "ign": f"ign-{uid}",
        "uid": uid,
        "join_date": date(2026, 1, 1),
        "status": "active",
        "has_420_tag": False,
        "rank_current": "Private",
        "frozen_days": 0,
        "counting_since": None,
        "source": "csv",
    }
    record.update(overrides)
    return record


class DBRosterUpsertTests(DBTestCase):
    async def test_upsert_by_uid_inserts_then_updates(self) -> None:
        row, inserted = await upsert_clan_member_by_uid(
            _record("U1"), now=NOW, session=self.session
        )
        self.assertTrue(inserted)
        self.assertTrue(row["needs_resolution"])
        self.assertEqual("unresolved", row["resolution_status"])

        updated, inserted = await upsert_clan_member_by_uid(
            _record("U1", ign="renamed", rank_current="Sergeant"),
            now=NOW,
            session=self.session,
        )
        self.assertFalse(inserted)
        self.assertEqual(row["id"], updated["id"])
        self.assertEqual("renamed", updated["ign"])
        self.assertEqual("Sergeant", updated["rank_current"])

    async def test_unresolved_reimport_keeps_existing_link(self) -> None:
        await upsert_clan_member_by_uid(
            _record(
                "U2",
                discord_id="42",
                needs_resolution=False,
                resolution_status="resolved_auto",
            ),
            now=NOW,
            session=self.session,
        )
        row, _ = await upsert_clan_member_by_uid(
            _record("U2"), now=NOW, session=self.session
        )
        self.assertEqual("42", row["discord_id"])
        self.assertEqual("resolved_auto", row["resolution_status"])

    async def test_upsert_by_discord_id_preserves_join_date_and_folds_days(self) -> None:
        existing = await insert_clan_member(
            _record(
                "U3",
                discord_id="77",
                has_420_tag=True,
                frozen_days=4,
                counting_since=NOW - timedelta(days=10),
                join_date=date(2025, 12, 1),
            ),
            session=self.session,
        )
        application = {"discord_id": "77", "discord_name": "Applicant", "ign": None, "uid": "OTHER"}
        row = await upsert_clan_member_by_discord_id(
            application_member_record(application, NOW), now=NOW, session=self.session
        )
        self.assertEqual(existing["id"], row["id"])
        self.assertEqual(date(2025, 12, 1), row["join_date"])
        self.assertEqual("U3", row["uid"])
        self.assertEqual(14, row["frozen_days"])
        self.assertIsNone(row["counting_since"])
        self.assertFalse(row["has_420_tag"])
        self.assertEqual("Private", row["rank_current"])
        self.assertEqual("csv", row["source"])

    async def test_upsert_by_discord_id_inserts_new_member(self) -> None:
        application = {"discord_id": "88", "discord_name": "Fresh", "ign": "FreshIGN", "uid": None}
        row = await upsert_clan_member_by_discord_id(
            application_member_record(application, NOW), now=NOW, session=self.session
        )
        self.assertEqual(NOW.date(), row["join_date"])
        self.assertEqual("application", row["source"])
        self.assertIsNone(row["uid"])
        self.assertEqual(0, row["frozen_days"])


class DBRosterReimportTests(DBTestCase):
    async def test_unresolved_reimport_keeps_linked_tenure(self) -> None:
        since = NOW - timedelta(days=40)
        await upsert_clan_member_by_uid(
            _record(
                "L1",
                discord_id="55",
                needs_resolution=False,
                has_420_tag=True,
                counting_since=since,
                rank_current="Corporal",
            ),
            now=NOW,
            session=self.session,
        )
        row, inserted = await upsert_clan_member_by_uid(
            _record("L1", ign="renamed"),
            keep_when_linked=LINKED_TENURE_FIELDS,
            now=NOW,
            session=self.session,
        )
        self.assertFalse(inserted)
        self.assertEqual("renamed", row["ign"])
        self.assertEqual("55", row["discord_id"])
        self.assertTrue(row["has_420_tag"])
        self.assertEqual(since, row["counting_since"])
        self.assertEqual("Corporal", row["rank_current"])

    async def test_unlinked_reimport_takes_sheet_values(self) -> None:
        await upsert_clan_member_by_uid(
            _record("L2", frozen_days=3), now=NOW, session=self.session
        )
        row, _ = await upsert_clan_member_by_uid(
            _record("L2", frozen_days=12, rank_current="Corporal"),
            keep_when_linked=LINKED_TENURE_FIELDS,
            now=NOW,
            session=self.session,
        )
        self.assertEqual(12, row["frozen_days"])
        self.assertEqual("Corporal", row["rank_current"])


class DBRosterQueryTests(DBTestCase):
    async def test_listing_filters_and_counts(self) -> None:
        await insert_clan_member(
            _record("A1", discord_name="Alpha", join_date=date(2026, 1, 2)),
            session=self.session,
        )
        await insert_clan_member(
            _record(
                "B1",
                discord_name="Bravo",
                discord_id="5",
                needs_resolution=False,
                status="inactive",
                join_date=date(2026, 1, 1),
            ),
            session=self.session,
        )
        rows, total = await list_clan_members(page=1, page_size=10, session=self.session)
        self.assertEqual(2, total)
        self.assertEqual(["Bravo", "Alpha"], [r["discord_name"] for r in rows])

        rows, total = await list_clan_members(search="alp", session=self.session)
        self.assertEqual(1, total)
        rows, total = await list_clan_members(status="inactive", session=self.session)
        self.assertEqual(["Bravo"], [r["discord_name"] for r in rows])

        self.assertEqual(1, await count_clan_members(needs_resolution=True, session=self.session))
        unresolved = await list_unresolved_clan_members(session=self.session)
        self.assertEqual(["Alpha"], [r["discord_name"] for r in unresolved])

    async def test_update_fields_returns_row_or_none(self) -> None:
        member = await insert_clan_member(_record("C1"), session=self.session)
        updated = await update_clan_member_fields(
            member["id"], {"ign": "changed"}, now=NOW, session=self.session
        )
        self.assertEqual("changed", updated["ign"])
        self.assertIsNone(
            await update_clan_member_fields(999999, {"ign": "x"}, session=self.session)
        )
        self.session.expire_all()
        locked = await get_clan_member_by_id(member["id"], for_update=True, session=self.session)
        self.assertEqual("changed", locked["ign"])


class DBPromotionDueTests(DBTestCase):
    async def test_filter_and_count_use_live_tenure(self) -> None:
        # Written on day 13 with promote_eligible=False; on day 15 it is due.
        crossed = await insert_clan_member(
            _record(
                "P1",
                discord_name="Crossed",
                has_420_tag=True,
                counting_since=NOW - timedelta(days=15),
                promote_eligible=False,
            ),
            session=self.session,
        )
        # Stored flag says due, but live tenure is short of the next threshold.
        stale = await insert_clan_member(
            _record(
                "P2",
                discord_name="Stale",
                has_420_tag=True,
                rank_current="Corporal",
                counting_since=NOW - timedelta(days=20),
                promote_eligible=True,
            ),
            session=self.session,
        )
        await insert_clan_member(
            _record(
                "P3",
                discord_name="Frozen",
                status="inactive",
                frozen_days=40,
                promote_eligible=False,
            ),
            session=self.session,
        )

        rows, total = await list_clan_members(
            promotion_due=True, now=NOW, session=self.session
        )
        self.assertEqual(1, total)
        self.assertEqual([crossed["id"]], [r["id"] for r in rows])

        rows, total = await list_clan_members(
            promotion_due=False, now=NOW, session=self.session
        )
        self.assertEqual(2, total)
        self.assertIn(stale["id"], [r["id"] for r in rows])

        self.assertEqual(
            1,
            await count_clan_members(promotion_due=True, now=NOW, session=self.session),
        )
        # One day earlier the first row had not crossed the threshold yet.
        self.assertEqual(
            0,
            await count_clan_members(
                promotion_due=True,
                now=NOW - timedelta(days=2),
                session=self.session,
            ),
        )

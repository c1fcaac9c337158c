import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import clan_import
from clan_import import CooldownLimiter, build_import_record, import_rows, normalize_row
from discord_api import DiscordAPIError
from errors import (
    BatchTooLargeError,
    ConflictError,
    ExternalServiceError,
    RateLimitedError,
    StoreError,
    ValidationError,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _member(user_id, username, nick=None):
    return {"user": {"id": user_id, "username": username, "global_name": None}, "nick": nick}


def _row(**overrides):
    row = {
        "Discord Name": "jay420",
        "Ingame Name": "JayIGN",
        "UID": "U1",
        "Join Date": "2026-02-27",
        "Time in Clan": "0",
        "Role Given": "Private",
    }
    row.update(overrides)
    return row


class _Clock:
    def __init__(self, value=1000.0):
        self.value = value

    def __call__(self):
        return self.value


class NormalizeRowTests(unittest.TestCase):
    def test_aliases_are_case_insensitive_and_unknown_headers_dropped(self) -> None:
        row = normalize_row({" DISCORD NAME ": " Jay ", "in-game name": "J", "Favourite Food": "x"})
        self.assertEqual({"discord_name": "Jay", "ign": "J"}, row)


class BuildImportRecordTests(unittest.TestCase):
    def test_declared_rank_is_kept_above_earned_rank(self) -> None:
        directory = [_member("1", "jay420")]
        record, resolved = build_import_record(_row(**{"Role Given": "Sergeant"}), directory, NOW)
        self.assertTrue(resolved)
        self.assertTrue(record["has_420_tag"])
        self.assertEqual("Sergeant", record["rank_current"])
        self.assertFalse(record["promote_eligible"])
        self.assertIsNone(record["promote_reason"])
        self.assertEqual("1", record["discord_id"])
        self.assertEqual("resolved_auto", record["resolution_status"])

    def test_unresolved_row_keeps_time_in_clan_frozen(self) -> None:
        record, resolved = build_import_record(
            _row(**{"Discord Name": "ghost", "Time in Clan": "45"}), [_member("1", "jay420")], NOW
        )
        self.assertFalse(resolved)
        self.assertEqual(45, record["frozen_days"])
        self.assertIsNone(record["counting_since"])
        self.assertFalse(record["has_420_tag"])
        self.assertEqual("Sergeant", record["rank_current"])
        self.assertNotIn("discord_id", record)
        self.assertNotIn("resolution_status", record)

    def test_missing_fields_raise_row_errors(self) -> None:
        for header, message in (
            ("Discord Name", "missing Discord name"),
            ("Ingame Name", "missing Ingame name"),
            ("UID", "missing UID"),
        ):
            with self.assertRaises(clan_import._RowError) as ctx:
                build_import_record(_row(**{header: ""}), [], NOW)
            self.assertEqual(message, str(ctx.exception))
        with self.assertRaises(clan_import._RowError):
            build_import_record(_row(**{"Join Date": "whenever"}), [], NOW)


class CooldownLimiterTests(unittest.TestCase):
    def test_second_hit_inside_window_is_rejected(self) -> None:
        clock = _Clock()
        limiter = CooldownLimiter(60, clock=clock)
        limiter.hit("staff")
        clock.value += 10
        with self.assertRaises(RateLimitedError) as ctx:
            limiter.hit("staff")
        self.assertEqual(51, ctx.exception.extra["retry_after"])
        limiter.hit("other")
        clock.value += 60
        limiter.hit("staff")


class ImportRowsTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.limiter = CooldownLimiter(60, clock=_Clock())

    async def test_rejects_empty_and_oversized_batches_without_cooldown(self) -> None:
        with self.assertRaises(ValidationError):
            await import_rows([], actor_id="staff", limiter=self.limiter)
        with patch.object(clan_import, "IMPORT_MAX_ROWS", 2):
            with self.assertRaises(BatchTooLargeError):
                await import_rows([_row()] * 3, actor_id="staff", limiter=self.limiter)
        self.limiter.hit("staff")

    async def test_bad_rows_do_not_abort_the_batch(self) -> None:
        rows = [
            _row(),
            _row(UID=""),
            "not a row",
            _row(**{"Discord Name": "ghost", "UID": "U4"}),
            _row(**{"Discord Name": "jay420", "UID": "U5"}),
        ]
        upsert = AsyncMock(
            side_effect=[
                ({"id": 1}, True),
                ({"id": 4}, False),
                ConflictError("Upsert failed: constraint violation"),
            ]
        )
        with patch(
            "clan_import.fetch_directory", new=AsyncMock(return_value=[_member("1", "jay420")])
        ), patch("clan_import.upsert_member_by_uid", new=upsert), patch(
            "clan_import.write_audit_log", new=AsyncMock(return_value=True)
        ) as audit_mock:
            outcome = await import_rows(rows, actor_id="staff", now=NOW, limiter=self.limiter)

        self.assertEqual(1, outcome.imported)
        self.assertEqual(1, outcome.updated)
        self.assertEqual(1, outcome.unresolved)
        self.assertEqual(
            [
                "Row 2: missing UID",
                "Row 3: not an object",
                "Row 5: upsert failed: Upsert failed: constraint violation",
            ],
            outcome.errors,
        )
        self.assertIsNotNone(outcome.partial)
        self.assertEqual(3, len(outcome.partial.errors))
        self.assertEqual("clan_list_imported", audit_mock.await_args.args[0])
        self.assertTrue(outcome.to_dict()["ok"])

    async def test_second_import_inside_cooldown_does_no_work(self) -> None:
        fetch = AsyncMock(return_value=[])
        with patch("clan_import.fetch_directory", new=fetch), patch(
            "clan_import.upsert_member_by_uid", new=AsyncMock(return_value=({"id": 1}, True))
        ), patch("clan_import.write_audit_log", new=AsyncMock(return_value=True)):
            await import_rows([_row()], actor_id="staff", now=NOW, limiter=self.limiter)
            with self.assertRaises(RateLimitedError):
                await import_rows([_row()], actor_id="staff", now=NOW, limiter=self.limiter)
        self.assertEqual(1, fetch.await_count)

    async def test_unresolved_row_does_not_overwrite_linked_tenure(self) -> None:
        directory = [_member("1", "jay420"), _member("2", "jay420x")]
        rows = [
            _row(**{"Discord Name": "jay", "UID": "U7"}),
            _row(**{"Discord Name": "jay420x", "UID": "U8"}),
        ]
        upsert = AsyncMock(return_value=({"id": 1}, False))
        with patch("clan_import.fetch_directory", new=AsyncMock(return_value=directory)), patch(
            "clan_import.upsert_member_by_uid", new=upsert
        ), patch("clan_import.write_audit_log", new=AsyncMock(return_value=True)):
            outcome = await import_rows(rows, actor_id="staff", now=NOW, limiter=self.limiter)

        self.assertEqual(1, outcome.unresolved)
        ambiguous, resolved = upsert.await_args_list
        self.assertNotIn("discord_id", ambiguous.args[0])
        self.assertEqual(
            clan_import.LINKED_TENURE_FIELDS, ambiguous.kwargs["keep_when_linked"]
        )
        self.assertEqual("2", resolved.args[0]["discord_id"])
        self.assertEqual((), resolved.kwargs["keep_when_linked"])

    async def test_directory_failure_imports_rows_unresolved(self) -> None:
        upsert = AsyncMock(return_value=({"id": 1}, True))
        with patch(
            "clan_import.fetch_directory", new=AsyncMock(side_effect=DiscordAPIError(503, "down"))
        ), patch("clan_import.upsert_member_by_uid", new=upsert), patch(
            "clan_import.write_audit_log", new=AsyncMock(return_value=True)
        ):
            outcome = await import_rows([_row()], actor_id="staff", now=NOW, limiter=self.limiter)
        self.assertEqual(1, outcome.unresolved)
        self.assertNotIn("discord_id", upsert.await_args.args[0])


class BulkResolveTests(unittest.IsolatedAsyncioTestCase):
    async def test_classifies_every_row(self) -> None:
        unresolved = [
            {"id": 1, "discord_name": "linked", "discord_id": "99"},
            {"id": 2, "discord_name": "Jay", "discord_id": None},
            {"id": 3, "discord_name": "ghost", "discord_id": None},
            {"id": 4, "discord_name": "unique", "discord_id": None},
            {"id": 5, "discord_name": "broken", "discord_id": None},
        ]
        directory = [
            _member("10", "jay"),
            _member("11", "someone", nick="Jay"),
            _member("12", "unique"),
            _member("13", "broken"),
        ]

        async def _update(member_id, values, *, now):
            if member_id == 5:
                raise StoreError("Resolve member failed")
            return {"id": member_id, **values}

        with patch(
            "clan_import.list_unresolved_clan_members", new=AsyncMock(return_value=unresolved)
        ), patch("clan_import.fetch_directory", new=AsyncMock(return_value=directory)), patch(
            "clan_import.update_clan_member_fields", new=AsyncMock(side_effect=_update)
        ) as update_mock, patch(
            "clan_import.write_audit_log", new=AsyncMock(return_value=True)
        ):
            result = await clan_import.bulk_resolve(actor_id="staff", now=NOW)

        self.assertEqual(5, result["total_checked"])
        self.assertEqual(1, result["skipped"])
        self.assertEqual(1, result["ambiguous"])
        self.assertEqual(1, result["not_found"])
        self.assertEqual(1, result["resolved"])
        self.assertEqual(1, result["db_error"])
        self.assertEqual(
            ["already_has_id", "ambiguous", "not_found", "resolved"],
            [d["result"] for d in result["details"][:4]],
        )
        self.assertTrue(result["details"][4]["result"].startswith("db_error"))
        self.assertEqual("12", update_mock.await_args_list[0].args[1]["discord_id"])

    async def test_nothing_unresolved_skips_directory(self) -> None:
        fetch = AsyncMock()
        with patch(
            "clan_import.list_unresolved_clan_members", new=AsyncMock(return_value=[])
        ), patch("clan_import.fetch_directory", new=fetch):
            result = await clan_import.bulk_resolve(actor_id="staff", now=NOW)
        self.assertEqual(0, result["total_checked"])
        fetch.assert_not_awaited()

    async def test_empty_directory_is_an_external_failure(self) -> None:
        with patch(
            "clan_import.list_unresolved_clan_members",
            new=AsyncMock(return_value=[{"id": 1, "discord_name": "x", "discord_id": None}]),
        ), patch("clan_import.fetch_directory", new=AsyncMock(return_value=[])):
            with self.assertRaises(ExternalServiceError):
                await clan_import.bulk_resolve(actor_id="staff", now=NOW)


class SearchDirectoryTests(unittest.IsolatedAsyncioTestCase):
    async def test_returns_labelled_candidates(self) -> None:
        directory = [_member("1", "jaybird", nick="JB"), _member("2", "jay")]
        with patch("clan_import.fetch_directory", new=AsyncMock(return_value=directory)), patch(
            "clan_import.write_audit_log", new=AsyncMock(return_value=True)
        ):
            results = await clan_import.search_directory("jay", actor_id="staff")
        self.assertEqual(["2", "1"], [r["discord_id"] for r in results])
        self.assertEqual("@jaybird (nick: JB)", results[1]["sublabel"])

    async def test_blank_query_returns_nothing(self) -> None:
        fetch = AsyncMock()
        with patch("clan_import.fetch_directory", new=fetch):
            self.assertEqual([], await clan_import.search_directory("  ", actor_id="staff"))
        fetch.assert_not_awaited()

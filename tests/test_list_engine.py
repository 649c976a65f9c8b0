import asyncio
import csv
import io
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from csv_export import BOM
from list_engine import ALL_STATUS, PLACEHOLDER_COLUMN, ListEngine
from navigation import MemoryNavigator
from notifications import Notifier
from preference_store import MemoryPreferenceStore
from resource_config import (
    FieldSpec,
    FieldType,
    FilterSpec,
    Operations,
    ResourceConfig,
    SegmentSpec,
)
from resource_gateway import FailureKind, GatewayError, MemoryResourceGateway


ROWS = [
    {"id": 1, "name": "Ada", "user": {"email": "ada@example.com"}, "status": "active", "age": 9,
     "createdAt": "2024-01-03T10:00:00Z", "billingStatus": "monthly"},
    {"id": 2, "name": "bob", "user": {"email": "bob@example.com"}, "status": "Suspended", "age": 30,
     "createdAt": "2024-01-01T10:00:00Z", "activePlan": {"interval": "annually"}},
    {"id": 3, "name": "Cleo", "user": None, "status": "active", "age": None,
     "createdAt": "2024-01-02T10:00:00Z", "billingStatus": ""},
]


def _config(**kwargs) -> ResourceConfig:
    base = dict(
        resource_key="parents",
        title_singular="parent",
        operations=Operations.from_paths(
            list="/parents",
            get="/parent/{id}",
            remove="/parent/{id}",
            update_status="/parent/{id}/status",
        ),
        fields=(
            FieldSpec("id", "ID", FieldType.NUMBER),
            FieldSpec("name", "Name"),
            FieldSpec("user.email", "Email"),
            FieldSpec("status", "Status", FieldType.SELECT),
            FieldSpec("age", "Age", FieldType.NUMBER),
            FieldSpec("createdAt", "Created", FieldType.DATE),
            FieldSpec("actions", "Actions", sortable=False),
        ),
        route_base="/admin/parents",
        default_visible=("id", "name", "user.email", "status"),
        filters=(FilterSpec("billing", ("billingStatus", "activePlan.interval"), ("monthly", "annually"), "billingStatus"),),
    )
    base.update(kwargs)
    return ResourceConfig(**base)


class ListEngineTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.gateway = MemoryResourceGateway()
        self.gateway.route("GET", "/parents", {"data": [dict(r) for r in ROWS]})
        self.prefs = MemoryPreferenceStore()
        self.notifier = Notifier()
        self.navigator = MemoryNavigator()

    def _engine(self, config: ResourceConfig | None = None, **kwargs) -> ListEngine:
        return ListEngine(
            config or _config(),
            self.gateway,
            self.prefs,
            notifier=self.notifier,
            navigator=self.navigator,
            search_debounce=kwargs.pop("search_debounce", 0),
            **kwargs,
        )


class TestLoading(ListEngineTestCase):
    async def test_load_sends_server_query(self) -> None:
        engine = self._engine()
        engine.set_filter("billing", "monthly")
        rows = await engine.load()
        self.assertEqual(len(rows), 3)
        call = self.gateway.calls_to("GET", "/parents")[-1]
        self.assertEqual(call.query, {"pageSize": 1000, "sort": "createdAt:desc", "billingStatus": "monthly"})

    async def test_segment_status_wins_over_dropdown(self) -> None:
        engine = self._engine()
        engine.set_status_filter("disabled")
        await engine.load()
        self.assertEqual(self.gateway.calls[-1].query["status"], "disabled")
        engine.set_segment("active")
        await engine.load({"q": "ada"})
        self.assertEqual(self.gateway.calls[-1].query["status"], "active")
        self.assertEqual(self.gateway.calls[-1].query["q"], "ada")

    async def test_failure_gives_empty_rows(self) -> None:
        self.gateway.route("GET", "/parents", status=500)
        engine = self._engine()
        engine.rows = [{"id": 99}]
        rows = await engine.load()
        self.assertEqual(rows, [])
        self.assertEqual(engine.last_failure.kind, FailureKind.SERVER)
        self.assertEqual(engine.view()["failure"]["status"], 500)
        self.assertEqual(self.notifier.pending(), [])

    async def test_rethrow_policy_raises(self) -> None:
        self.gateway.route("GET", "/parents", status=503)
        engine = self._engine(_config(fallbacks={"list": "rethrow"}))
        with self.assertRaises(GatewayError):
            await engine.load()

    async def test_missing_list_operation(self) -> None:
        engine = self._engine(_config(operations=Operations.from_paths(get="/parent/{id}")))
        self.assertEqual(await engine.load(), [])
        self.assertEqual(engine.last_failure.kind, FailureKind.MISSING_ENDPOINT)
        self.assertEqual(self.gateway.calls, [])

    async def test_non_list_payload_is_empty(self) -> None:
        self.gateway.route("GET", "/parents", {"data": {"id": 1}})
        engine = self._engine()
        self.assertEqual(await engine.load(), [])
        self.assertIsNone(engine.last_failure)

    async def test_custom_parser(self) -> None:
        self.gateway.route("GET", "/parents", {"parents": [{"id": 5}]})
        engine = self._engine(_config(parse_list=lambda raw: raw["parents"]))
        self.assertEqual(await engine.load(), [{"id": 5}])

    async def test_selection_pruned_on_reload(self) -> None:
        engine = self._engine()
        engine.select([1, 2, 42, 1])
        self.assertEqual(engine.selected_ids, [1, 2, 42])
        await engine.load()
        self.assertEqual(engine.selected_ids, [1, 2])


class TestDerivedView(ListEngineTestCase):
    async def asyncSetUp(self) -> None:
        self.engine = self._engine()
        await self.engine.load()

    def _ids(self) -> list:
        return [r["id"] for r in self.engine.derived_rows()]

    async def test_status_filter_case_insensitive(self) -> None:
        self.engine.set_status_filter("suspended")
        self.assertEqual(self._ids(), [2])
        self.engine.set_status_filter(None)
        self.assertEqual(self.engine.status_filter, ALL_STATUS)
        self.assertEqual(self._ids(), [1, 2, 3])

    async def test_segment_filter(self) -> None:
        self.assertFalse(self.engine.set_segment("nope"))
        self.engine.set_segment("active")
        self.assertEqual(self._ids(), [1, 3])

    async def test_simple_filter_uses_first_non_empty_path(self) -> None:
        self.engine.set_filter("billing", "annually")
        self.assertEqual(self._ids(), [2])
        self.engine.set_filter("billing", "monthly")
        self.assertEqual(self._ids(), [1])
        self.assertFalse(self.engine.set_filter("billing", "weekly"))
        self.assertFalse(self.engine.set_filter("unknown", "x"))

    async def test_search_covers_visible_columns_only(self) -> None:
        self.engine.apply_search("  BOB@ ")
        self.assertEqual(self._ids(), [2])
        self.engine.apply_search("30")
        self.assertEqual(self._ids(), [])
        self.engine.toggle_column("age")
        self.assertEqual(self._ids(), [2])

    async def test_search_matches_serialized_objects(self) -> None:
        config = _config(resource_key="people", fields=(FieldSpec("id"), FieldSpec("user", "User")), default_visible=("user",))
        engine = self._engine(config)
        await engine.load()
        engine.apply_search('"email":"ada')
        self.assertEqual([r["id"] for r in engine.derived_rows()], [1])

    async def test_filters_compose_before_sort(self) -> None:
        self.engine.set_segment("active")
        self.engine.apply_search("a")
        self.engine.sort_by("name", "desc")
        self.assertEqual(self._ids(), [3, 1])

    async def test_raw_rows_are_untouched(self) -> None:
        self.engine.set_status_filter("active")
        self.engine.sort_by("name", "desc")
        self.assertEqual([r["id"] for r in self.engine.rows], [1, 2, 3])
        self.assertEqual(self.engine.view()["raw_total"], 3)

    async def test_columns_placeholder_when_none_visible(self) -> None:
        self.engine.set_visible_columns([])
        self.assertEqual(self.engine.columns(), [PLACEHOLDER_COLUMN])
        self.engine.apply_search("ada")
        self.assertEqual(self._ids(), [])


class TestSorting(ListEngineTestCase):
    async def asyncSetUp(self) -> None:
        self.engine = self._engine()
        await self.engine.load()

    async def test_server_order_until_explicit_sort(self) -> None:
        self.assertIsNone(self.engine.sort_indicator("name"))
        self.assertEqual([r["id"] for r in self.engine.derived_rows()], [1, 2, 3])

    async def test_text_sort_is_case_insensitive_and_toggles(self) -> None:
        self.engine.sort_by("name")
        self.assertEqual([r["name"] for r in self.engine.derived_rows()], ["Ada", "bob", "Cleo"])
        self.assertEqual(self.engine.sort_indicator("name"), "asc")
        self.engine.sort_by("name")
        self.assertEqual([r["name"] for r in self.engine.derived_rows()], ["Cleo", "bob", "Ada"])
        self.assertEqual(self.prefs.raw("parents.sort.v1"), '{"column":"name","direction":"desc"}')

    async def test_numbers_numeric_and_missing_last(self) -> None:
        self.engine.sort_by("age", "desc")
        self.assertEqual([r["id"] for r in self.engine.derived_rows()], [2, 1, 3])
        self.engine.sort_by("age", "asc")
        self.assertEqual([r["id"] for r in self.engine.derived_rows()], [1, 2, 3])

    async def test_id_column_sorts_numerically(self) -> None:
        for ids in ([9, 10, 2], ["9", "10", "2"]):
            self.gateway.route("GET", "/parents", [{"id": i, "name": f"n{i}"} for i in ids])
            engine = self._engine(_config(fields=(FieldSpec("id", "ID"), FieldSpec("name", "Name")), default_visible=("id", "name")))
            await engine.load()
            engine.sort_by("id", "asc")
            self.assertEqual([str(r["id"]) for r in engine.derived_rows()], ["2", "9", "10"])
            engine.sort_by("id", "desc")
            self.assertEqual([str(r["id"]) for r in engine.derived_rows()], ["10", "9", "2"])

    async def test_dates_chronological(self) -> None:
        self.engine.sort_by("createdAt", "asc")
        self.assertEqual([r["id"] for r in self.engine.derived_rows()], [2, 3, 1])

    async def test_unsortable_and_unknown_columns_ignored(self) -> None:
        self.engine.sort_by("actions")
        self.engine.sort_by("bogus")
        self.assertFalse(self.engine.sort.explicit)

    async def test_clear_sort(self) -> None:
        self.engine.sort_by("name")
        self.engine.clear_sort()
        self.assertIsNone(self.prefs.raw("parents.sort.v1"))
        self.assertEqual([r["id"] for r in self.engine.derived_rows()], [1, 2, 3])


class TestPreferences(ListEngineTestCase):
    async def test_restored_from_store(self) -> None:
        self.prefs.write("parents", "visibleCols", ["status", "gone", "name"])
        self.prefs.write("parents", "pageSize", 25)
        self.prefs.write("parents", "sort", {"column": "age", "direction": "desc"})
        self.prefs.write("parents", "billingFilter", "annually")
        engine = self._engine()
        self.assertEqual(engine.visible_columns, ["status", "name"])
        self.assertEqual(engine.page_size, 25)
        self.assertTrue(engine.sort.explicit)
        self.assertEqual(engine.sort_indicator("age"), "desc")
        self.assertEqual(engine.filters, {"billing": "annually"})

    async def test_invalid_values_fall_back_to_defaults(self) -> None:
        self.prefs.write("parents", "visibleCols", "name")
        self.prefs.write("parents", "pageSize", 33)
        self.prefs.write("parents", "sort", {"column": "bogus", "direction": "asc"})
        self.prefs.write("parents", "billingFilter", "weekly")
        engine = self._engine()
        self.assertEqual(engine.visible_columns, ["id", "name", "user.email", "status"])
        self.assertEqual(engine.page_size, 100)
        self.assertFalse(engine.sort.explicit)
        self.assertEqual(engine.filters, {"billing": None})

    async def test_version_bump_ignores_old_values(self) -> None:
        self.prefs.write("parents", "pageSize", 25)
        engine = self._engine(_config(pref_version=2))
        self.assertEqual(engine.page_size, 100)

    async def test_column_toggle_persists(self) -> None:
        engine = self._engine()
        engine.toggle_column("status")
        engine.toggle_column("age")
        engine.toggle_column("nope")
        self.assertEqual(engine.visible_columns, ["id", "name", "user.email", "age"])
        self.assertEqual(self.prefs.raw("parents.visibleCols.v1"), '["id","name","user.email","age"]')

    async def test_page_size(self) -> None:
        engine = self._engine()
        self.assertFalse(engine.set_page_size(7))
        self.assertTrue(engine.set_page_size(10))
        self.assertEqual(self.prefs.read("parents", "pageSize", None), 10)

    async def test_clearing_filter_removes_pref(self) -> None:
        engine = self._engine()
        engine.set_filter("billing", "monthly")
        engine.set_filter("billing", None)
        self.assertIsNone(self.prefs.raw("parents.billingFilter.v1"))


class TestPagingAndSearchDebounce(ListEngineTestCase):
    async def test_paging_is_visual_only(self) -> None:
        self.gateway.route("GET", "/parents", [{"id": i, "name": f"n{i}"} for i in range(1, 24)])
        engine = self._engine()
        await engine.load()
        engine.set_page_size(10)
        self.assertEqual(engine.page_count(), 3)
        self.assertEqual([r["id"] for r in engine.page(3)], [21, 22, 23])
        view = engine.view(page=2)
        self.assertEqual(view["total"], 23)
        self.assertEqual(len(view["rows"]), 10)
        self.assertEqual(len(engine.derived_rows()), 23)

    async def test_debounced_search(self) -> None:
        engine = self._engine(search_debounce=0.05)
        await engine.load()
        engine.type_search("a")
        engine.type_search("ad")
        engine.type_search("ada")
        self.assertEqual(engine.search_text, "")
        self.assertEqual(engine.typed_text, "ada")
        await asyncio.sleep(0.1)
        self.assertEqual(engine.search_text, "ada")
        self.assertEqual([r["id"] for r in engine.derived_rows()], [1])

    async def test_reset_clears_state_and_reloads(self) -> None:
        engine = self._engine(search_debounce=0.05)
        await engine.load()
        engine.set_status_filter("active")
        engine.set_segment("active")
        engine.set_filter("billing", "monthly")
        engine.set_page_size(10)
        engine.apply_search("ada")
        engine.type_search("pending")
        await engine.reset()
        await asyncio.sleep(0.1)
        self.assertEqual(engine.search_text, "")
        self.assertEqual(engine.status_filter, ALL_STATUS)
        self.assertEqual(engine.segment, "all")
        self.assertEqual(engine.filters, {"billing": None})
        self.assertEqual(engine.page_size, 100)
        self.assertEqual(len(self.gateway.calls_to("GET", "/parents")), 2)


class TestActions(ListEngineTestCase):
    async def test_actions_follow_capabilities(self) -> None:
        engine = self._engine()
        self.assertEqual(engine.row_actions(), ["view", "edit", "delete"])
        self.assertEqual(
            engine.bulk_actions(),
            ["activate", "suspend", "block", "delete", "export_all", "export_filtered", "reset"],
        )
        readonly = self._engine(_config(operations=Operations.from_paths(list="/parents"), status_filter=False))
        self.assertEqual(readonly.row_actions(), ["view", "edit"])
        self.assertEqual(readonly.bulk_actions(), ["export_all", "export_filtered", "reset"])
        self.assertIsNone(readonly.delete_prompt({"id": 1}))
        self.assertFalse(await readonly.delete_row(1))

    async def test_open_and_edit_routes(self) -> None:
        engine = self._engine()
        self.assertEqual(engine.open_row(4), "/admin/parents/4")
        engine.edit_row(4)
        self.assertEqual(self.navigator.current, "/admin/parents/4/edit")

    async def test_delete_prompt_and_delete(self) -> None:
        self.gateway.route("DELETE", "/parent/1", None, status=204)
        engine = self._engine()
        await engine.load()
        prompt = engine.delete_prompt({"id": 1, "name": "Ada"})
        self.assertEqual(prompt, {"title": "Delete parent?", "message": "Are you sure you want to delete Ada?"})
        self.assertEqual(engine.delete_prompt({"id": 7})["message"], "Are you sure you want to delete #7?")
        self.assertTrue(await engine.delete_row(1))
        self.assertEqual([r["id"] for r in engine.rows], [2, 3])
        self.assertEqual(self.notifier.latest().message, "Deleted")

    async def test_delete_failure_keeps_row(self) -> None:
        self.gateway.route("DELETE", "/parent/1", status=500)
        engine = self._engine()
        await engine.load()
        self.assertFalse(await engine.delete_row(1))
        self.assertEqual(len(engine.rows), 3)
        self.assertEqual(self.notifier.latest("error").message, "Failed to delete")

    async def test_bulk_status_partial_failure(self) -> None:
        self.gateway.route("PATCH", "/parent/1/status", {"ok": True})
        self.gateway.route("PATCH", "/parent/2/status", status=500)
        self.gateway.route("PATCH", "/parent/3/status", {"ok": True})
        engine = self._engine()
        await engine.load()
        engine.select([1, 2, 3])
        outcome = await engine.bulk_update_status([1, 2, 3, 1], "block")
        self.assertEqual(outcome.succeeded, [1, 3])
        self.assertEqual(list(outcome.failed.keys()), [2])
        self.assertEqual([r["status"] for r in engine.rows], ["disabled", "Suspended", "disabled"])
        self.assertEqual(engine.selected_ids, [2])
        self.assertEqual(self.gateway.calls_to("PATCH", "/parent/1/status")[0].payload, {"status": "disabled"})
        errors = self.notifier.pending("error")
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].message, "Failed to update 1 of 3 records")
        self.assertEqual(outcome.as_dict()["failed"]["2"]["kind"], "server")

    async def test_bulk_delete_success(self) -> None:
        self.gateway.route("DELETE", "/parent/1", None)
        self.gateway.route("DELETE", "/parent/3", None)
        engine = self._engine()
        await engine.load()
        outcome = await engine.bulk_delete(["1", "3"])
        self.assertTrue(outcome.ok)
        self.assertEqual([r["id"] for r in engine.rows], [2])
        self.assertEqual(self.notifier.latest("success").message, "Deleted 2 records")

    async def test_bulk_delete_partial_failure(self) -> None:
        self.gateway.route("GET", "/parents", [{"id": i, "name": f"n{i}"} for i in range(1, 6)])
        self.gateway.route("DELETE", "/parent/1", None, status=204)
        self.gateway.route("DELETE", "/parent/2", status=500)
        engine = self._engine()
        await engine.load()
        engine.select([1, 2, 3, 4, 5])
        outcome = await engine.bulk_delete([1, 2])
        self.assertEqual(outcome.succeeded, [1])
        self.assertEqual(list(outcome.failed.keys()), [2])
        self.assertEqual([r["id"] for r in engine.rows], [2, 3, 4, 5])
        self.assertEqual(engine.selected_ids, [2, 3, 4, 5])
        errors = self.notifier.pending("error")
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].message, "Failed to delete 1 of 2 records")
        self.assertEqual(self.notifier.pending("success"), [])

    async def test_bulk_without_capability_is_noop(self) -> None:
        engine = self._engine(_config(operations=Operations.from_paths(list="/parents")))
        self.assertEqual((await engine.bulk_update_status([1], "activate")).results, {})
        self.assertEqual((await engine.bulk_delete([1])).results, {})
        self.assertEqual(self.notifier.pending(), [])


class TestExport(ListEngineTestCase):
    async def test_export_filtered_vs_all(self) -> None:
        engine = self._engine()
        await engine.load()
        engine.set_status_filter("active")
        filtered = engine.export_csv("filtered")
        everything = engine.export_csv("all")
        parsed = list(csv.reader(io.StringIO(filtered.text[len(BOM):])))
        self.assertEqual(parsed[0], ["ID", "Name", "Email", "Status"])
        self.assertEqual([row[0] for row in parsed[1:]], ["1", "3"])
        self.assertEqual(parsed[2], ["3", "Cleo", "-", "active"])
        self.assertEqual(filtered.row_count, 2)
        self.assertEqual(everything.row_count, 3)
        self.assertEqual(everything.filename, "parents.csv")

    async def test_export_follows_sort_and_columns(self) -> None:
        engine = self._engine()
        await engine.load()
        engine.set_visible_columns(["name"])
        engine.sort_by("name", "desc")
        parsed = list(csv.reader(io.StringIO(engine.export_csv().text[len(BOM):])))
        self.assertEqual(parsed, [["Name"], ["Cleo"], ["bob"], ["Ada"]])

    async def test_empty_export_has_header(self) -> None:
        self.gateway.route("GET", "/parents", [])
        engine = self._engine()
        await engine.load()
        export = engine.export_csv("all")
        self.assertEqual(export.row_count, 0)
        self.assertEqual(export.text, BOM + '"ID","Name","Email","Status"\n')


class TestSegments(ListEngineTestCase):
    async def test_custom_segment_match(self) -> None:
        config = _config(segments=(SegmentSpec("all", "All"), SegmentSpec("bobs", "Bobs", {"name": "bob"})))
        engine = self._engine(config)
        await engine.load()
        engine.set_segment("bobs")
        self.assertEqual([r["id"] for r in engine.derived_rows()], [2])
        self.assertNotIn("status", self.gateway.calls[-1].query)


if __name__ == "__main__":
    unittest.main()

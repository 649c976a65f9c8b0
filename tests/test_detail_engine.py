import asyncio
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from detail_engine import CACHED_ROW_MESSAGE, NOT_FOUND_MESSAGE, DetailEngine, LoadState, normalize_series
from inline_edit import EditState
from navigation import MemoryNavigator
from notifications import Notifier
from resource_config import (
    FieldSpec,
    FieldType,
    Operations,
    ResourceConfig,
    TabConfig,
    TabKind,
)
from resource_gateway import GatewayError, MemoryResourceGateway


def _config(**kwargs) -> ResourceConfig:
    base = dict(
        resource_key="parents",
        title_singular="parent",
        operations=Operations.from_paths(
            list="/parents",
            get="/parent/{id}",
            update="/parent/{id}",
            remove="/parent/{id}",
            update_status="/parent/{id}/status",
        ),
        fields=(
            FieldSpec("id", "ID"),
            FieldSpec("name", "Name", editable=True),
            FieldSpec("user.name", "Full name", editable=True),
            FieldSpec("status", "Status", FieldType.SELECT, True, ("active", "suspended", "disabled")),
            FieldSpec("age", "Age", FieldType.NUMBER, editable=True),
            FieldSpec("createdAt", "Created", FieldType.DATE, editable=True),
        ),
        route_base="/admin/parents",
        tabs=(
            TabConfig(
                TabKind.TASKS,
                list_path="/parent/{id}/tasks",
                create_path="/parent/{id}/tasks",
                update_path="/parent/{id}/tasks/{sub_id}",
                delete_path="/parent/{id}/tasks/{sub_id}",
            ),
            TabConfig(
                TabKind.DOCUMENTS,
                list_path="/parent/{id}/documents",
                create_path="/parent/{id}/documents",
                delete_path="/parent/{id}/documents/{sub_id}",
                comment_list_path="/parent/{id}/documents/{sub_id}/comments",
                comment_create_path="/parent/{id}/documents/{sub_id}/comments",
            ),
            TabConfig(TabKind.COMMUNICATION, list_path="/parent/{id}/comments"),
            TabConfig(TabKind.BILLING, enabled=False),
            TabConfig(TabKind.ACTIVITY, list_path="/parent/{id}/activity"),
            TabConfig(
                TabKind.AUDIT,
                list_path="/parent/{id}/audit",
                fallback="return_placeholder",
                placeholder_rows=({"id": "a1", "action": "created"},),
            ),
        ),
    )
    base.update(kwargs)
    return ResourceConfig(**base)


class DetailEngineTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.gateway = MemoryResourceGateway()
        self.gateway.route("GET", "/parent/1", {"data": {"id": 1, "name": "Ada", "status": "active", "user": {"name": "Ada L"}}})
        self.notifier = Notifier()
        self.navigator = MemoryNavigator("/admin/parents/1")

    def _engine(self, config: ResourceConfig | None = None, entity_id=1, prefill=None) -> DetailEngine:
        return DetailEngine(
            config or _config(),
            self.gateway,
            entity_id,
            notifier=self.notifier,
            navigator=self.navigator,
            prefill=prefill,
        )


class TestRootLoad(DetailEngineTestCase):
    async def test_success_merges_over_prefill(self) -> None:
        engine = self._engine(prefill={"id": 1, "name": "Cached", "extra": "x"})
        self.assertEqual(engine.root.status, LoadState.LOADED)
        entity = await engine.load()
        self.assertEqual(entity["name"], "Ada")
        self.assertEqual(entity["extra"], "x")
        self.assertFalse(engine.root.cached)
        self.assertEqual(engine.title_name(), "Ada L")
        self.assertEqual(self.notifier.pending(), [])

    async def test_not_found_gives_placeholder_and_error(self) -> None:
        engine = self._engine(entity_id=5)
        entity = await engine.load()
        self.assertEqual(entity, {"id": 5, "name": "-", "status": "active"})
        self.assertTrue(engine.root.cached)
        self.assertEqual(engine.title_name(), "#5")
        self.assertEqual(self.notifier.latest("error").message, NOT_FOUND_MESSAGE)

    async def test_server_error_keeps_cached_row_with_warning(self) -> None:
        self.gateway.route("GET", "/parent/1", status=500)
        prefill = {"id": 1, "name": "Cached"}
        engine = self._engine(prefill=prefill)
        entity = await engine.load()
        self.assertEqual(entity, prefill)
        self.assertEqual(self.notifier.latest("warning").message, CACHED_ROW_MESSAGE)
        self.assertEqual(engine.view()["failure"]["status"], 500)

    async def test_rethrow_policy(self) -> None:
        self.gateway.route("GET", "/parent/1", status=500)
        engine = self._engine(_config(fallbacks={"get": "rethrow"}))
        with self.assertRaises(GatewayError):
            await engine.load()
        self.assertEqual(engine.root.status, LoadState.ERROR)

    async def test_return_empty_policy(self) -> None:
        self.gateway.route("GET", "/parent/1", status=500)
        engine = self._engine(_config(fallbacks={"get": "return_empty"}))
        self.assertEqual(await engine.load(), {})

    async def test_missing_get_operation_is_silent(self) -> None:
        engine = self._engine(_config(operations=Operations.from_paths(list="/parents")))
        entity = await engine.load()
        self.assertEqual(entity["name"], "-")
        self.assertEqual(self.notifier.pending(), [])
        self.assertEqual(self.gateway.calls, [])

    async def test_stale_root_response_dropped(self) -> None:
        gate = asyncio.Event()

        async def slow(payload, query):
            await gate.wait()
            return {"id": 1, "name": "Old"}

        self.gateway.route("GET", "/parent/1", handler=slow)
        engine = self._engine()
        task = asyncio.ensure_future(engine.load())
        await asyncio.sleep(0)
        engine.navigate_to(2)
        gate.set()
        await task
        self.assertEqual(engine.entity_id, 2)
        self.assertIsNone(engine.entity)

    async def test_title_name_fallbacks(self) -> None:
        engine = self._engine(prefill={"id": 3, "first_name": "Grace", "last_name": "Hopper", "name": "gh"})
        self.assertEqual(engine.title_name(), "Grace Hopper")
        engine.navigate_to(4, {"id": 4, "name": "Plain"})
        self.assertEqual(engine.title_name(), "Plain")


class TestInformation(DetailEngineTestCase):
    async def test_info_rows_and_nav_tabs(self) -> None:
        engine = self._engine()
        await engine.load()
        rows = {r["key"]: r for r in engine.info_rows()}
        self.assertEqual(rows["age"]["value"], "-")
        self.assertEqual(rows["user.name"]["value"], "Ada L")
        self.assertFalse(rows["id"]["editable"])
        self.assertFalse(rows["createdAt"]["editable"])
        self.assertTrue(rows["name"]["editable"])
        self.assertEqual(
            engine.nav_tabs(),
            ["information", "tasks", "documents", "communication", "activity", "audit"],
        )
        self.assertEqual(engine.view()["status_actions"], ["activate", "suspend", "block"])


class TestTabs(DetailEngineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.gateway.route("GET", "/parent/1/tasks", [{"id": 10, "title": "Call"}])

    async def test_tabs_load_lazily_once(self) -> None:
        engine = self._engine()
        await engine.load()
        self.assertEqual(self.gateway.calls_to("GET", "/parent/1/tasks"), [])
        state = await engine.activate_tab("tasks")
        self.assertEqual(state.rows, [{"id": 10, "title": "Call"}])
        self.assertEqual(engine.active_tab, "tasks")
        await engine.activate_tab("information")
        await engine.activate_tab(TabKind.TASKS)
        self.assertEqual(len(self.gateway.calls_to("GET", "/parent/1/tasks")), 1)
        await engine.activate_tab("tasks", refresh=True)
        self.assertEqual(len(self.gateway.calls_to("GET", "/parent/1/tasks")), 2)

    async def test_concurrent_activation_coalesces(self) -> None:
        gate = asyncio.Event()

        async def slow(payload, query):
            await gate.wait()
            return [{"id": 11}]

        self.gateway.route("GET", "/parent/1/tasks", handler=slow)
        engine = self._engine()
        first = asyncio.ensure_future(engine.activate_tab("tasks"))
        second = asyncio.ensure_future(engine.activate_tab("tasks"))
        await asyncio.sleep(0)
        gate.set()
        a, b = await asyncio.gather(first, second)
        self.assertIs(a, b)
        self.assertEqual(a.rows, [{"id": 11}])
        self.assertEqual(len(self.gateway.calls_to("GET", "/parent/1/tasks")), 1)

    async def test_navigation_drops_inflight_tab(self) -> None:
        gate = asyncio.Event()

        async def slow(payload, query):
            await gate.wait()
            return [{"id": 12}]

        self.gateway.route("GET", "/parent/1/tasks", handler=slow)
        engine = self._engine()
        pending = asyncio.ensure_future(engine.activate_tab("tasks"))
        await asyncio.sleep(0)
        engine.navigate_to(2)
        gate.set()
        state = await pending
        self.assertEqual(state.status, LoadState.IDLE)
        self.assertEqual(state.rows, [])
        self.assertEqual(engine.active_tab, "information")

    async def test_disabled_and_unknown_tabs(self) -> None:
        engine = self._engine()
        self.assertIsNone(await engine.activate_tab("billing"))
        view = engine.tab_view("billing")
        self.assertFalse(view.enabled)
        self.assertEqual(view.status, LoadState.DISABLED)
        self.assertEqual(view.message, "Billing is not configured for this parent.")
        self.assertIsNone(await engine.activate_tab("nope"))
        self.assertEqual(self.gateway.calls, [])

    async def test_failed_tab_uses_fallback_rows(self) -> None:
        self.gateway.route("GET", "/parent/1/audit", status=500)
        engine = self._engine()
        state = await engine.activate_tab("audit")
        self.assertEqual(state.status, LoadState.ERROR)
        self.assertEqual(state.rows, [{"id": "a1", "action": "created"}])
        view = engine.tab_view("audit").as_dict()
        self.assertEqual(view["message"], "Could not load audit.")
        self.assertEqual(view["failure"]["kind"], "server")
        self.assertEqual(self.notifier.pending(), [])

    async def test_comments_slot_is_communication_tab(self) -> None:
        self.gateway.route("GET", "/parent/1/comments", {"data": [{"id": 1, "text": "hi"}]})
        engine = self._engine()
        await engine.activate_tab("communication")
        slot = engine.comments_slot()
        self.assertEqual(slot.kind, "communication")
        self.assertEqual(slot.rows, [{"id": 1, "text": "hi"}])

    async def test_activity_range_and_series(self) -> None:
        def activity(payload, query):
            if query.get("range") == "90d":
                return [{"month": "Jan", "score": "7"}]
            return [{"date": "2024-01-01", "value": 3}, {"progress": 0.5}, "junk"]

        self.gateway.route("GET", "/parent/1/activity", handler=activity)
        engine = self._engine()
        state = await engine.load_activity("7d")
        self.assertEqual(self.gateway.calls[-1].query, {"range": "14d"})
        self.assertEqual(state.rows, [{"label": "2024-01-01", "value": 3.0}, {"label": "P2", "value": 0.5}])
        state = await engine.load_activity("90d")
        self.assertEqual(state.rows, [{"label": "Jan", "value": 7.0}])
        await engine.load_activity("90d")
        self.assertEqual(len(self.gateway.calls_to("GET", "/parent/1/activity")), 2)

    def test_normalize_series_bad_values(self) -> None:
        self.assertEqual(normalize_series([{"label": "x", "value": "n/a"}]), [{"label": "x", "value": 0.0}])


class TestInlineEdit(DetailEngineTestCase):
    async def test_enter_saves_nested_field(self) -> None:
        self.gateway.route("PATCH", "/parent/1", {"ok": True})
        engine = self._engine()
        await engine.load()
        self.assertTrue(engine.begin_edit("user.name"))
        self.assertEqual(engine.editor.session.pending_value, "Ada L")
        engine.set_pending("Grace")
        outcome = await engine.handle_key("Enter")
        self.assertTrue(outcome.saved)
        self.assertEqual(self.gateway.calls_to("PATCH", "/parent/1")[0].payload, {"user": {"name": "Grace"}})
        self.assertEqual(engine.entity["user"]["name"], "Grace")
        self.assertEqual(engine.editor.state, EditState.VIEWING)

    async def test_saved_nested_value_replaces_scalar_on_path(self) -> None:
        self.gateway.route("GET", "/parent/1", {"id": 1, "name": "Ada", "user": "Ada"})
        self.gateway.route("PATCH", "/parent/1", {"ok": True})
        engine = self._engine()
        await engine.load()
        self.assertTrue(engine.begin_edit("user.name"))
        engine.set_pending("Bob")
        with self.assertLogs("entkit.detail_engine", level="WARNING"):
            outcome = await engine.commit_edit()
        self.assertTrue(outcome.saved)
        self.assertEqual(len(self.gateway.calls_to("PATCH", "/parent/1")), 1)
        self.assertEqual(engine.entity["user"], {"name": "Bob"})
        self.assertEqual(engine.entity["name"], "Ada")
        self.assertEqual(engine.editor.state, EditState.VIEWING)
        self.assertEqual(self.notifier.pending("error"), [])

    async def test_failed_save_notifies_and_keeps_value(self) -> None:
        self.gateway.route("PATCH", "/parent/1", status=422)
        engine = self._engine()
        await engine.load()
        engine.begin_edit("name")
        engine.set_pending("Bad")
        outcome = await engine.commit_edit()
        self.assertIsNotNone(outcome.failure)
        self.assertEqual(engine.entity["name"], "Ada")
        self.assertEqual(self.notifier.latest("error").message, "Failed to save changes")

    async def test_readonly_fields_and_escape(self) -> None:
        engine = self._engine()
        await engine.load()
        self.assertFalse(engine.begin_edit("id"))
        engine.begin_edit("name")
        engine.set_pending("Zed")
        outcome = await engine.handle_key("Escape")
        self.assertTrue(outcome.cancelled)
        self.assertEqual(engine.entity["name"], "Ada")
        self.assertEqual(self.gateway.calls_to("PATCH"), [])

    async def test_no_update_capability(self) -> None:
        engine = self._engine(_config(operations=Operations.from_paths(get="/parent/{id}")))
        await engine.load()
        self.assertFalse(engine.begin_edit("name"))
        self.assertTrue(all(not r["editable"] for r in engine.info_rows()))


class TestStatusAndDelete(DetailEngineTestCase):
    async def test_status_action_reloads(self) -> None:
        self.gateway.route("PATCH", "/parent/1/status", {"ok": True})
        engine = self._engine()
        self.assertTrue(await engine.set_status("suspend"))
        self.assertEqual(self.gateway.calls_to("PATCH", "/parent/1/status")[0].payload, {"status": "suspended"})
        self.assertEqual(self.notifier.latest("success").message, "Status → suspended")
        self.assertEqual(len(self.gateway.calls_to("GET", "/parent/1")), 1)
        self.assertFalse(engine.saving)

    async def test_status_failure(self) -> None:
        self.gateway.route("PATCH", "/parent/1/status", status=500)
        engine = self._engine()
        self.assertFalse(await engine.set_status("active"))
        self.assertEqual(self.notifier.latest("error").message, "Failed to update status")
        self.assertEqual(self.gateway.calls_to("GET", "/parent/1"), [])

    async def test_status_without_capability(self) -> None:
        engine = self._engine(_config(operations=Operations.from_paths(get="/parent/{id}")))
        self.assertEqual(engine.status_actions(), [])
        self.assertFalse(await engine.set_status("activate"))

    async def test_delete_requires_confirmation(self) -> None:
        self.gateway.route("DELETE", "/parent/1", None, status=204)
        engine = self._engine()
        await engine.load()
        self.assertFalse(await engine.confirm_delete())
        prompt = engine.request_delete()
        self.assertEqual(prompt.title, "Delete parent?")
        self.assertEqual(prompt.message, "Are you sure you want to delete Ada L?")
        engine.cancel_delete()
        self.assertFalse(engine.delete_pending)
        engine.request_delete()
        self.assertTrue(await engine.confirm_delete())
        self.assertEqual(self.navigator.current, "/admin/parents")
        self.assertEqual(self.notifier.latest("success").message, "Deleted")

    async def test_delete_failure_stays(self) -> None:
        self.gateway.route("DELETE", "/parent/1", status=500)
        engine = self._engine()
        engine.request_delete()
        self.assertFalse(await engine.confirm_delete())
        self.assertEqual(self.navigator.current, "/admin/parents/1")
        self.assertEqual(self.notifier.latest("error").message, "Failed to delete")

    async def test_no_remove_capability(self) -> None:
        engine = self._engine(_config(operations=Operations.from_paths(get="/parent/{id}")))
        self.assertFalse(engine.can_delete())
        self.assertIsNone(engine.request_delete())

    async def test_edit_and_back_navigation(self) -> None:
        engine = self._engine()
        self.assertEqual(engine.go_edit(), "/admin/parents/1/edit")
        engine.go_back()
        self.assertEqual(self.navigator.current, "/admin/parents/1")


class TestSubResources(DetailEngineTestCase):
    async def test_task_lifecycle(self) -> None:
        self.gateway.route("GET", "/parent/1/tasks", [{"id": 10, "title": "Old"}])
        self.gateway.route("POST", "/parent/1/tasks", {"data": {"id": 99, "title": "Call"}})
        self.gateway.route("PATCH", "/parent/1/tasks/99", None)
        self.gateway.route("DELETE", "/parent/1/tasks/10", None)
        engine = self._engine()
        await engine.activate_tab("tasks")
        created = await engine.create_task({"title": "Call"})
        self.assertEqual(created["id"], 99)
        self.assertTrue(await engine.update_task("99", {"done": True}))
        self.assertTrue(await engine.delete_task(10))
        self.assertEqual(engine.tabs[TabKind.TASKS].rows, [{"id": 99, "title": "Call", "done": True}])
        self.assertEqual(self.notifier.latest("success").message, "Task deleted")

    async def test_task_create_failure(self) -> None:
        self.gateway.route("POST", "/parent/1/tasks", status=500)
        engine = self._engine()
        self.assertIsNone(await engine.create_task({"title": "Call"}))
        self.assertEqual(engine.tabs[TabKind.TASKS].rows, [])
        self.assertEqual(self.notifier.latest("error").message, "Failed to add task")

    async def test_local_comment_when_no_create_path(self) -> None:
        engine = self._engine()
        created = await engine.add_comment({"text": "hello"})
        self.assertTrue(created["id"].startswith("c1-"))
        self.assertEqual(engine.comments_slot().rows[0]["text"], "hello")
        self.assertEqual(self.gateway.calls_to("POST"), [])
        self.assertEqual(self.notifier.latest().message, "Comment added")

    async def test_upload_document_sends_file(self) -> None:
        self.gateway.route("POST", "/parent/1/documents", None, status=201)
        self.gateway.route("DELETE", "/parent/1/documents/d9", None)
        engine = self._engine()
        created = await engine.upload_document("contract.pdf", b"%PDF", {"description": "Signed"}, "application/pdf")
        call = self.gateway.calls_to("POST", "/parent/1/documents")[0]
        self.assertEqual(call.files["file"], ("contract.pdf", b"%PDF", "application/pdf"))
        self.assertEqual(call.payload, {"description": "Signed"})
        self.assertEqual(created["title"], "contract.pdf")
        self.assertEqual(created["status"], "uploaded")
        self.assertEqual(created["url"], "#")
        self.assertTrue(created["id"].startswith("d1-"))
        engine.tabs[TabKind.DOCUMENTS].rows.append({"id": "d9"})
        self.assertTrue(await engine.delete_document("d9"))
        self.assertEqual(self.notifier.latest().message, "Document removed")

    async def test_document_comments(self) -> None:
        self.gateway.route("GET", "/parent/1/documents/7/comments", [{"id": 1, "text": "first"}])
        self.gateway.route("POST", "/parent/1/documents/7/comments", None)
        engine = self._engine()
        self.assertEqual(await engine.load_doc_comments(7), [{"id": 1, "text": "first"}])
        created = await engine.add_doc_comment(7, {"text": "second"})
        self.assertTrue(created["id"].startswith("dc-7-"))
        self.assertEqual([c["text"] for c in engine.doc_comments["7"]], ["second", "first"])
        self.assertEqual(self.notifier.latest().message, "Comment added")

    async def test_document_comment_failure(self) -> None:
        engine = self._engine()
        self.assertEqual(await engine.load_doc_comments(8), [])
        self.assertIsNone(await engine.add_doc_comment(8, {"text": "x"}))
        self.assertEqual(self.notifier.latest("error").message, "Failed to add comment")


if __name__ == "__main__":
    unittest.main()

"""Tests for record stores and the engine storage bundle."""

from datetime import UTC, datetime
from pathlib import Path

import pytest

from flowengine.graph.models import Execution, Node, Workflow
from flowengine.storage.backend import FileRecordStore, InMemoryRecordStore, validate_key
from flowengine.storage.bundle import EngineStorage
from flowengine.triggers.models import Trigger

# === HELPER FUNCTIONS ===


def create_workflow(workflow_id: str = "wf-1", agent_id: str = "agent-1") -> Workflow:
    return Workflow(
        id=workflow_id,
        agent_id=agent_id,
        nodes=[Node(id="start", type="manual_trigger")],
    )


# === KEY VALIDATION ===


class TestValidateKey:
    @pytest.mark.parametrize("key", ["", "  ", "a/b", "..\\x", "../etc", ".hidden", "C:foo", "a$b"])
    def test_rejects_unsafe_keys(self, key):
        with pytest.raises(ValueError):
            validate_key(key)

    def test_accepts_generated_ids(self):
        validate_key("exec_0123abcd")
        validate_key("wf-1")


# === IN-MEMORY STORE ===


class TestInMemoryRecordStore:
    @pytest.mark.asyncio
    async def test_save_load_roundtrip_is_a_copy(self):
        store = InMemoryRecordStore()
        workflow = create_workflow()
        await store.save(workflow.id, workflow)

        workflow.name = "mutated"
        loaded = await store.load("wf-1")
        assert loaded.name == ""
        loaded.name = "also mutated"
        assert (await store.load("wf-1")).name == ""

    @pytest.mark.asyncio
    async def test_list_with_predicate_and_delete(self):
        store = InMemoryRecordStore()
        for i, agent in enumerate(["a", "b", "a"]):
            await store.save(f"wf-{i}", create_workflow(f"wf-{i}", agent))

        assert [w.id for w in await store.list(lambda w: w.agent_id == "a")] == ["wf-0", "wf-2"]
        assert await store.delete("wf-0") is True
        assert await store.delete("wf-0") is False
        assert await store.load("wf-0") is None


# === FILE STORE ===


class TestFileRecordStore:
    @pytest.mark.asyncio
    async def test_writes_one_json_file_per_record(self, tmp_path: Path):
        store = FileRecordStore(tmp_path, "workflows", Workflow)
        await store.save("wf-1", create_workflow())

        path = tmp_path / "workflows" / "wf-1.json"
        assert path.exists()
        assert (await store.load("wf-1")).nodes[0].type == "manual_trigger"

    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self, tmp_path: Path):
        store = FileRecordStore(tmp_path, "workflows", Workflow)
        assert await store.load("nope") is None
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_list_skips_corrupt_files(self, tmp_path: Path):
        store = FileRecordStore(tmp_path, "workflows", Workflow)
        await store.save("wf-1", create_workflow())
        (tmp_path / "workflows" / "broken.json").write_text("{not json")

        assert [w.id for w in await store.list()] == ["wf-1"]

    @pytest.mark.asyncio
    async def test_datetimes_survive_roundtrip(self, tmp_path: Path):
        store = FileRecordStore(tmp_path, "triggers", Trigger)
        when = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)
        trigger = Trigger(agent_id="a", cron_expression="0 9 * * *", last_run_at=when)
        await store.save(trigger.id, trigger)
        assert (await store.load(trigger.id)).last_run_at == when

    @pytest.mark.asyncio
    async def test_rejects_traversal(self, tmp_path: Path):
        store = FileRecordStore(tmp_path, "workflows", Workflow)
        with pytest.raises(ValueError):
            await store.save("../escape", create_workflow())


# === BUNDLE ===


@pytest.mark.asyncio
async def test_on_disk_bundle_uses_collections(tmp_path: Path):
    storage = EngineStorage.on_disk(tmp_path)
    execution = Execution(workflow_id="wf-1")
    await storage.executions.save(execution.id, execution)
    await storage.workflows.save("wf-1", create_workflow())

    assert (tmp_path / "executions" / f"{execution.id}.json").exists()
    assert (tmp_path / "workflows" / "wf-1.json").exists()


@pytest.mark.asyncio
async def test_in_memory_bundle_collections_are_independent():
    storage = EngineStorage.in_memory()
    await storage.workflows.save("wf-1", create_workflow())
    assert await storage.executions.list() == []

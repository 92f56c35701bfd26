"""
Tests for Task Models and the JSON Task Store
=============================================

Tests covering tasks/models.py and tasks/store.py:
- camelCase persistence and subtask helpers
- Versioned saves and stale-write rejection
- Serialized read-modify-write updates
- Listing, deletion and change notifications
"""

import asyncio
import json

import pytest

from agents.events import TaskEventBus
from core.errors import NotFoundError, StaleWriteError, ValidationError
from tasks import JsonTaskStore, Subtask, SubtaskStatus, SubtaskType, Task


@pytest.fixture
def store(temp_dir):
    return JsonTaskStore(temp_dir / "tasks", TaskEventBus())


def _task(**kwargs):
    return Task(title=kwargs.pop("title", "Add login"), **kwargs)


# =============================================================================
# Models
# =============================================================================


class TestTaskModel:
    """Tests for Task / Subtask helpers."""

    def test_generated_id_format(self):
        task = _task()
        prefix, millis, suffix = task.id.split("-")
        assert prefix == "task"
        assert millis.isdigit()
        assert len(suffix) == 5

    def test_to_dict_uses_camel_case(self):
        data = _task(requires_human_review=False).to_dict()

        assert data["requiresHumanReview"] is False
        assert data["planningStatus"] == "not_started"
        assert "requires_human_review" not in data

    def test_from_dict_round_trip_keeps_subtasks(self):
        task = _task(subtasks=[Subtask(id="s1", content="Do it", label="Do", active_form="Doing")])

        loaded = Task.from_dict(json.loads(json.dumps(task.to_dict())))

        assert loaded.subtasks[0].active_form == "Doing"
        assert loaded.id == task.id

    def test_next_pending_follows_record_order(self):
        task = _task(
            subtasks=[
                Subtask(id="d1", content="a", label="a", status=SubtaskStatus.COMPLETED),
                Subtask(id="q1", content="b", label="b", type=SubtaskType.QA),
                Subtask(id="d2", content="c", label="c"),
            ]
        )

        assert task.next_pending(SubtaskType.DEV).id == "d2"
        assert task.next_pending(SubtaskType.QA).id == "q1"

    def test_all_completed_is_vacuous_for_empty_type(self):
        task = _task(subtasks=[Subtask(id="d1", content="a", label="a")])

        assert task.all_completed(SubtaskType.QA) is True
        assert task.all_completed(SubtaskType.DEV) is False

    def test_removed_ids_stay_used(self):
        task = _task(subtasks=[Subtask(id="d1", content="a", label="a")])

        removed = task.remove_subtask("d1")

        assert removed.id == "d1"
        assert task.subtasks == []
        assert "d1" in task.used_subtask_ids()
        assert task.remove_subtask("d1") is None


# =============================================================================
# Saving
# =============================================================================


class TestSaveAndLoad:
    """Tests for versioned saves."""

    @pytest.mark.asyncio
    async def test_save_then_load(self, store):
        task = _task()
        await store.save_task(task)

        loaded = await store.load_task(task.id)

        assert loaded.title == "Add login"
        assert loaded.version == 1
        assert task.version == 1

    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self, store):
        assert await store.load_task("task-missing") is None
        with pytest.raises(NotFoundError):
            await store.get_task("task-missing")

    @pytest.mark.asyncio
    async def test_stale_save_is_rejected(self, store):
        task = _task()
        await store.save_task(task)
        first = await store.load_task(task.id)
        second = await store.load_task(task.id)

        first.description = "first writer"
        await store.save_task(first)
        second.description = "second writer"

        with pytest.raises(StaleWriteError) as exc_info:
            await store.save_task(second)
        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 2
        assert (await store.load_task(task.id)).description == "first writer"

    @pytest.mark.asyncio
    async def test_save_after_delete_is_not_found(self, store):
        task = _task()
        await store.save_task(task)
        await store.delete_task(task.id)

        with pytest.raises(NotFoundError):
            await store.save_task(task)

    @pytest.mark.asyncio
    async def test_invalid_id_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.load_task("../outside")


# =============================================================================
# Updating
# =============================================================================


class TestUpdateTask:
    """Tests for update_task."""

    @pytest.mark.asyncio
    async def test_returns_task_and_mutator_result(self, store):
        task = _task()
        await store.save_task(task)

        def mutate(t):
            t.description = "changed"
            return "done"

        updated, result = await store.update_task(task.id, mutate)

        assert result == "done"
        assert updated.description == "changed"
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_concurrent_updates_are_not_lost(self, store):
        task = _task(metadata={"count": 0})
        await store.save_task(task)

        def increment(t):
            t.metadata["count"] += 1

        await asyncio.gather(*(store.update_task(task.id, increment) for _ in range(20)))

        loaded = await store.load_task(task.id)
        assert loaded.metadata["count"] == 20
        assert loaded.version == 21

    @pytest.mark.asyncio
    async def test_failing_mutator_saves_nothing(self, store):
        task = _task()
        await store.save_task(task)

        def broken(t):
            t.description = "half done"
            raise ValueError("nope")

        with pytest.raises(ValueError):
            await store.update_task(task.id, broken)

        loaded = await store.load_task(task.id)
        assert loaded.description == ""
        assert loaded.version == 1

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, store):
        with pytest.raises(NotFoundError):
            await store.update_task("task-missing", lambda t: None)


# =============================================================================
# Listing, deletion and notifications
# =============================================================================


class TestListAndDelete:
    """Tests for list_tasks, delete_task and event publishing."""

    @pytest.mark.asyncio
    async def test_list_newest_first_and_skips_corrupt(self, store):
        older = _task(title="older", created_at=1000)
        newer = _task(title="newer", created_at=2000)
        await store.save_task(older)
        await store.save_task(newer)
        (store.tasks_dir / "broken.json").write_text("{not json")

        tasks = await store.list_tasks()

        assert [t.title for t in tasks] == ["newer", "older"]

    @pytest.mark.asyncio
    async def test_list_without_directory(self, temp_dir):
        assert await JsonTaskStore(temp_dir / "absent").list_tasks() == []

    @pytest.mark.asyncio
    async def test_delete_removes_record_and_logs(self, store):
        task = _task()
        await store.save_task(task)
        log_dir = store.tasks_dir / task.id
        log_dir.mkdir()
        (log_dir / "planning-logs.txt").write_text("log")

        assert await store.delete_task(task.id) is True
        assert await store.load_task(task.id) is None
        assert not log_dir.exists()
        assert await store.delete_task(task.id) is False

    @pytest.mark.asyncio
    async def test_save_and_delete_publish_changes(self, store):
        seen = []
        store.events.add_listener(seen.append)
        task = _task()

        await store.save_task(task)
        await store.update_task(task.id, lambda t: None)
        await store.delete_task(task.id)

        assert seen == [task.id, task.id, task.id]

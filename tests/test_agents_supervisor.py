"""
Tests for the Agent Supervisor, Run Logs and Event Bus
======================================================

Tests covering agents/supervisor.py, agents/stream_log.py and
agents/events.py:
- Session lifecycle and the one-running-session-per-task rule
- Completion callbacks firing exactly once (success, failure, stop)
- NDJSON run logs, the thread index and phase logs
- Change notifications and waits
"""

import asyncio

import pytest

from agents.adapters import MockAdapter, MockScript
from agents.events import TaskEventBus
from agents.stream_log import StreamLog
from agents.supervisor import MAX_SESSION_LOG_ENTRIES, AgentSupervisor, SessionStatus
from core.errors import ConflictError, ExternalToolError, NotFoundError, ValidationError


class _BrokenAdapter(MockAdapter):
    async def initialize(self, config):
        raise RuntimeError("cannot start")


@pytest.fixture
def stream_log(temp_dir):
    return StreamLog(temp_dir / "tasks", temp_dir / "thread-index.json")


def _supervisor(stream_log=None, events=None, script=None, max_concurrent=12):
    return AgentSupervisor(
        lambda provider: MockAdapter(script),
        stream_log=stream_log,
        events=events,
        max_concurrent=max_concurrent,
    )


def _recorder():
    results = []

    async def on_complete(result):
        results.append(result)

    return results, on_complete


async def _wait_finished(supervisor, thread_id, timeout=5.0):
    runner = supervisor.get_session(thread_id).runner
    await asyncio.wait_for(asyncio.shield(runner), timeout)


# =============================================================================
# Lifecycle
# =============================================================================


class TestSessionLifecycle:
    """Tests for starting and finishing sessions."""

    @pytest.mark.asyncio
    async def test_successful_run(self, temp_dir):
        supervisor = _supervisor(script=lambda p, c: MockScript(output="all done"))
        results, on_complete = _recorder()

        thread_id = await supervisor.start_agent(
            "task-1", "do it", working_dir=str(temp_dir), on_complete=on_complete
        )
        await _wait_finished(supervisor, thread_id)

        status = supervisor.get_agent_status(thread_id)
        assert status["status"] == "completed"
        assert status["taskId"] == "task-1"
        assert status["logs"][0]["type"] == "system"
        assert len(results) == 1
        assert results[0].success is True
        assert results[0].output == "all done"
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_failed_run_reports_error(self, temp_dir):
        supervisor = _supervisor(script=lambda p, c: MockScript(fail=True, error="compile error"))
        results, on_complete = _recorder()

        thread_id = await supervisor.start_agent(
            "task-1", "do it", working_dir=str(temp_dir), on_complete=on_complete
        )
        await _wait_finished(supervisor, thread_id)

        session = supervisor.get_session(thread_id)
        assert session.status == SessionStatus.ERROR
        assert session.error == "compile error"
        assert [r.success for r in results] == [False]
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_structured_payload_is_passed_through(self, temp_dir):
        supervisor = _supervisor(script=lambda p, c: MockScript(structured={"plan": "# Plan"}))
        results, on_complete = _recorder()

        thread_id = await supervisor.start_agent(
            "task-1", "plan it", working_dir=str(temp_dir), on_complete=on_complete
        )
        await _wait_finished(supervisor, thread_id)

        assert results[0].structured == {"plan": "# Plan"}
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_second_agent_for_same_task_conflicts(self, temp_dir):
        supervisor = _supervisor(script=lambda p, c: MockScript(delay=0.5, steps=4))

        await supervisor.start_agent("task-1", "first", working_dir=str(temp_dir))
        with pytest.raises(ConflictError):
            await supervisor.start_agent("task-1", "second", working_dir=str(temp_dir))

        other = await supervisor.start_agent("task-2", "other task", working_dir=str(temp_dir))
        assert supervisor.get_session(other).is_running
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_starts_admit_one(self, temp_dir):
        supervisor = _supervisor(script=lambda p, c: MockScript(delay=0.5, steps=4))

        outcomes = await asyncio.gather(
            *(
                supervisor.start_agent("task-1", f"run {i}", working_dir=str(temp_dir))
                for i in range(5)
            ),
            return_exceptions=True,
        )

        started = [o for o in outcomes if isinstance(o, str)]
        conflicts = [o for o in outcomes if isinstance(o, ConflictError)]
        assert len(started) == 1
        assert len(conflicts) == 4
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_concurrency_ceiling(self, temp_dir):
        supervisor = _supervisor(
            script=lambda p, c: MockScript(delay=0.5, steps=4), max_concurrent=1
        )

        await supervisor.start_agent("task-1", "first", working_dir=str(temp_dir))
        with pytest.raises(ConflictError):
            await supervisor.start_agent("task-2", "second", working_dir=str(temp_dir))
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_adapter_init_failure_is_external_tool_error(self, temp_dir):
        supervisor = AgentSupervisor(lambda provider: _BrokenAdapter())

        with pytest.raises(ExternalToolError):
            await supervisor.start_agent("task-1", "x", working_dir=str(temp_dir))
        assert supervisor.get_running_session("task-1") is None

    @pytest.mark.asyncio
    async def test_unknown_provider_rejected(self, temp_dir):
        supervisor = AgentSupervisor()

        with pytest.raises(ValidationError):
            await supervisor.start_agent(
                "task-1", "x", working_dir=str(temp_dir), provider="nonexistent"
            )

    @pytest.mark.asyncio
    async def test_unknown_thread_status_not_found(self):
        with pytest.raises(NotFoundError):
            AgentSupervisor().get_agent_status("thread-missing")

    @pytest.mark.asyncio
    async def test_callback_exception_does_not_escape(self, temp_dir):
        supervisor = _supervisor()
        events = TaskEventBus()
        supervisor.events = events
        seen = []
        events.add_listener(seen.append)

        async def broken(result):
            raise RuntimeError("callback bug")

        thread_id = await supervisor.start_agent(
            "task-1", "x", working_dir=str(temp_dir), on_complete=broken
        )
        await _wait_finished(supervisor, thread_id)

        assert supervisor.get_session(thread_id).status == SessionStatus.COMPLETED
        assert seen == ["task-1"]
        await supervisor.shutdown()


# =============================================================================
# Stopping
# =============================================================================


class TestStopAgent:
    """Tests for stop_agent_by_thread_id."""

    @pytest.mark.asyncio
    async def test_stop_fires_callback_once(self, temp_dir):
        supervisor = _supervisor(script=lambda p, c: MockScript(delay=0.5, steps=10))
        results, on_complete = _recorder()
        thread_id = await supervisor.start_agent(
            "task-1", "long", working_dir=str(temp_dir), on_complete=on_complete
        )
        await asyncio.sleep(0.05)

        task_id = await supervisor.stop_agent_by_thread_id(thread_id)
        again = await supervisor.stop_agent_by_thread_id(thread_id)

        assert task_id == again == "task-1"
        assert supervisor.get_session(thread_id).status == SessionStatus.STOPPED
        assert len(results) == 1
        assert results[0].success is False
        assert results[0].error == "Agent stopped"
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_stop_after_completion_is_noop(self, temp_dir):
        supervisor = _supervisor()
        results, on_complete = _recorder()
        thread_id = await supervisor.start_agent(
            "task-1", "quick", working_dir=str(temp_dir), on_complete=on_complete
        )
        await _wait_finished(supervisor, thread_id)

        await supervisor.stop_agent_by_thread_id(thread_id)

        assert supervisor.get_session(thread_id).status == SessionStatus.COMPLETED
        assert len(results) == 1
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_stopped_task_can_start_again(self, temp_dir):
        supervisor = _supervisor(script=lambda p, c: MockScript(delay=0.5, steps=10))
        thread_id = await supervisor.start_agent("task-1", "long", working_dir=str(temp_dir))

        await supervisor.stop_task_agents("task-1")
        second = await supervisor.start_agent("task-1", "again", working_dir=str(temp_dir))

        assert second != thread_id
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_stop_unknown_thread(self):
        with pytest.raises(NotFoundError):
            await AgentSupervisor().stop_agent_by_thread_id("thread-missing")

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything(self, temp_dir):
        supervisor = _supervisor(script=lambda p, c: MockScript(delay=0.5, steps=10))
        first = await supervisor.start_agent("task-1", "a", working_dir=str(temp_dir))
        second = await supervisor.start_agent("task-2", "b", working_dir=str(temp_dir))

        await supervisor.shutdown()

        assert supervisor.get_session(first).status == SessionStatus.STOPPED
        assert supervisor.get_session(second).status == SessionStatus.STOPPED


# =============================================================================
# Session bookkeeping
# =============================================================================


class TestSessionBookkeeping:
    """Tests for forgetting sessions and bounding their in-memory logs."""

    @pytest.mark.asyncio
    async def test_forget_task_keeps_running_sessions(self, temp_dir):
        supervisor = _supervisor(script=lambda p, c: MockScript(delay=0))
        done = await supervisor.start_agent("task-1", "a", working_dir=str(temp_dir))
        await _wait_finished(supervisor, done)
        supervisor.adapter_factory = lambda provider: MockAdapter(
            lambda p, c: MockScript(delay=0.5, steps=10)
        )
        running = await supervisor.start_agent("task-1", "b", working_dir=str(temp_dir))
        other = await supervisor.start_agent("task-2", "c", working_dir=str(temp_dir))

        assert supervisor.forget_task("task-1") == 1

        assert supervisor.get_session(done) is None
        assert [s.thread_id for s in supervisor.list_sessions("task-1")] == [running]
        assert supervisor.get_session(other) is not None
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_session_log_is_bounded(self, temp_dir, stream_log):
        supervisor = _supervisor(
            stream_log=stream_log,
            script=lambda p, c: MockScript(delay=0, steps=MAX_SESSION_LOG_ENTRIES + 50),
        )

        thread_id = await supervisor.start_agent("task-1", "a", working_dir=str(temp_dir))
        await _wait_finished(supervisor, thread_id)
        await supervisor.flush()

        logs = supervisor.get_agent_status(thread_id)["logs"]
        assert len(logs) == MAX_SESSION_LOG_ENTRIES
        assert logs[-1]["type"] == "result"
        assert len(stream_log.read("task-1", thread_id).records) == MAX_SESSION_LOG_ENTRIES + 53
        await supervisor.shutdown()


# =============================================================================
# Run logs
# =============================================================================


class TestRunLogs:
    """Tests for NDJSON run logs written by the supervisor."""

    @pytest.mark.asyncio
    async def test_run_log_ends_with_status(self, temp_dir, stream_log):
        supervisor = _supervisor(stream_log=stream_log)
        thread_id = await supervisor.start_agent("task-1", "x", working_dir=str(temp_dir))
        await _wait_finished(supervisor, thread_id)
        await supervisor.flush()

        chunk = stream_log.read("task-1", thread_id)

        assert chunk.records[0]["type"] == "system"
        assert chunk.records[-1] == {"type": "status", "status": "completed"}
        assert stream_log.task_for_thread(thread_id) == "task-1"
        await supervisor.shutdown()

    def test_read_resumes_from_offset(self, stream_log):
        stream_log.append("task-1", "thread-a", {"type": "assistant", "content": "one"})
        first = stream_log.read("task-1", "thread-a")
        stream_log.append("task-1", "thread-a", {"type": "assistant", "content": "two"})

        second = stream_log.read("task-1", "thread-a", first.offset)

        assert [r["content"] for r in first.records] == ["one"]
        assert [r["content"] for r in second.records] == ["two"]

    def test_partial_line_left_for_next_read(self, stream_log):
        path = stream_log.stream_path("task-1", "thread-a")
        path.parent.mkdir(parents=True)
        path.write_text('{"type": "assistant", "content": "done"}\n{"type": "assi')

        chunk = stream_log.read("task-1", "thread-a")

        assert len(chunk.records) == 1
        assert chunk.offset == len('{"type": "assistant", "content": "done"}\n')

    def test_missing_log_reads_empty(self, stream_log):
        chunk = stream_log.read("task-1", "thread-missing", 7)

        assert chunk.records == []
        assert chunk.offset == 7

    def test_forget_task_drops_its_threads(self, stream_log):
        stream_log.register_thread("thread-a", "task-1")
        stream_log.register_thread("thread-b", "task-2")

        stream_log.forget_task("task-1")

        assert stream_log.task_for_thread("thread-a") is None
        assert stream_log.task_for_thread("thread-b") == "task-2"

    def test_phase_log_lines_are_timestamped(self, stream_log):
        stream_log.append_phase_log("task-1", "planning", "[Plan Generated]")

        content = stream_log.read_phase_log("task-1", "planning")

        assert content.startswith("[")
        assert content.rstrip().endswith("[Plan Generated]")
        assert stream_log.read_phase_log("task-1", "review") == ""


# =============================================================================
# Event bus
# =============================================================================


class TestTaskEventBus:
    """Tests for TaskEventBus."""

    @pytest.mark.asyncio
    async def test_watch_wakes_on_publish(self):
        bus = TaskEventBus()

        async def wait_once():
            async with bus.watch("task-1") as changed:
                await asyncio.wait_for(changed.wait(), timeout=2.0)
                return True

        waiter = asyncio.create_task(wait_once())
        await asyncio.sleep(0.01)
        bus.publish("task-1")

        assert await waiter is True

    @pytest.mark.asyncio
    async def test_other_tasks_do_not_wake_waiter(self):
        bus = TaskEventBus()
        async with bus.watch("task-1") as changed:
            bus.publish("task-2")
            assert not changed.is_set()
            bus.publish("task-1")
            assert changed.is_set()

    def test_failing_listener_is_isolated(self):
        bus = TaskEventBus()
        seen = []

        def broken(task_id):
            raise RuntimeError("listener bug")

        bus.add_listener(broken)
        bus.add_listener(seen.append)
        bus.publish("task-1")
        bus.remove_listener(broken)

        assert seen == ["task-1"]

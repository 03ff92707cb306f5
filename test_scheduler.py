import asyncio
import threading

from agent.execution import (
    MODE_COMPLETION, MODE_PARALLEL, MODE_SEQUENTIAL, REJECTED_MESSAGE, STOPPED_MESSAGE,
    ToolExecutionScheduler, dedupe_tool_calls,
)
from agent.models import ToolCall
from tools import COMPLETION, MUTATING, OTHER, READ_ONLY, ToolRegistry, ToolResult
from tools.registry import ToolSpec


class Recorder:
    """Fake tool set that logs the order in which handlers start and finish."""

    def __init__(self, parallel_reads: int = 2):
        self.log = []
        self.lock = threading.Lock()
        self.barrier = threading.Barrier(parallel_reads, timeout=5)

    def _note(self, entry):
        with self.lock:
            self.log.append(entry)

    def read_file(self, file_path, **kw):
        self._note(f"start:{file_path}")
        self.barrier.wait()  # only passes if both reads run at the same time
        self._note(f"end:{file_path}")
        return ToolResult(success=True, output=f"contents of {file_path}")

    def write_file(self, file_path, content, **kw):
        self._note(f"write:{file_path}")
        return ToolResult(success=True, output=f"Wrote {file_path}")

    def bash_command(self, command, **kw):
        self._note(f"bash:{command}")
        return ToolResult(success=True, output="ok")

    def attempt_completion(self, result, **kw):
        self._note("complete")
        return ToolResult(success=True, output=result, metadata={"completion": True})

    def registry(self, tmp_path):
        reg = ToolRegistry(str(tmp_path))
        string = {"type": "string"}
        reg.register(ToolSpec("read_file", "read", {"type": "object", "properties": {"file_path": string},
                                                    "required": ["file_path"]}, READ_ONLY, self.read_file))
        reg.register(ToolSpec("write_file", "write", {"type": "object",
                                                      "properties": {"file_path": string, "content": string},
                                                      "required": ["file_path", "content"]},
                              MUTATING, self.write_file))
        reg.register(ToolSpec("bash_command", "shell", {"type": "object", "properties": {"command": string},
                                                        "required": ["command"]}, OTHER, self.bash_command))
        reg.register(ToolSpec("attempt_completion", "done", {"type": "object", "properties": {"result": string},
                                                             "required": ["result"]},
                              COMPLETION, self.attempt_completion))
        return reg


def test_five_call_batch_schedule(tmp_path):
    rec = Recorder()
    scheduler = ToolExecutionScheduler(rec.registry(tmp_path), auto_approve_basic=True)
    read_a = ToolCall("read_file", {"file_path": "a.py"}, id="t1")
    read_b = ToolCall("read_file", {"file_path": "b.py"}, id="t2")
    read_a_dup = ToolCall("read_file", {"file_path": "a.py"}, id="t3")
    write_c = ToolCall("write_file", {"file_path": "c.py", "content": "x"}, id="t4")
    complete = ToolCall("attempt_completion", {"result": "done"}, id="t5")

    results = asyncio.run(scheduler.execute([complete, read_a, read_b, read_a_dup, write_c]))

    # Completion first in the input, yet executed last; only one read of a.py
    assert len(results) == 4
    assert [r.metadata["tool_use_id"] for r in results] == ["t5", "t1", "t2", "t4"]
    assert all(r.success for r in results)
    assert set(rec.log[:2]) == {"start:a.py", "start:b.py"}
    assert rec.log[4:] == ["write:c.py", "complete"]
    modes = {r.metadata["tool_use_id"]: r.metadata["execution_mode"] for r in results}
    assert modes == {"t1": MODE_PARALLEL, "t2": MODE_PARALLEL, "t4": MODE_SEQUENTIAL, "t5": MODE_COMPLETION}


def test_results_carry_timing_metadata(tmp_path, clock):
    rec = Recorder(parallel_reads=1)
    scheduler = ToolExecutionScheduler(rec.registry(tmp_path), auto_approve_basic=True, clock=clock)
    [result] = asyncio.run(scheduler.execute([ToolCall("read_file", {"file_path": "a.py"})]))
    assert result.metadata["start_time"] == clock.now
    assert result.metadata["end_time"] == clock.now
    assert result.metadata["duration"] == 0
    assert result.metadata["tool_name"] == "read_file"


def test_dedupe_keeps_first_id():
    calls = [
        ToolCall("read_file", {"file_path": "a.py"}, id="first"),
        ToolCall("read_file", {"file_path": "a.py"}, id="second"),
        ToolCall("read_file", {"file_path": "b.py"}, id="third"),
    ]
    assert [c.id for c in dedupe_tool_calls(calls)] == ["first", "third"]


def test_rejected_call_is_not_executed(tmp_path):
    rec = Recorder(parallel_reads=1)
    prompts = []

    async def deny(call, description):
        prompts.append(description)
        return False

    scheduler = ToolExecutionScheduler(rec.registry(tmp_path), request_approval=deny, auto_approve_basic=True)
    [result] = asyncio.run(scheduler.execute([ToolCall("bash_command", {"command": "rm -rf build"})]))

    assert not result.success
    assert result.error == REJECTED_MESSAGE
    assert prompts == ["Run command: rm -rf build"]
    assert rec.log == []


def test_safe_command_skips_approval(tmp_path):
    rec = Recorder(parallel_reads=1)

    def never(call, description):
        raise AssertionError("approval should not be requested")

    scheduler = ToolExecutionScheduler(rec.registry(tmp_path), request_approval=never, auto_approve_basic=True)
    [result] = asyncio.run(scheduler.execute([ToolCall("bash_command", {"command": "git status"})]))
    assert result.success
    assert rec.log == ["bash:git status"]


def test_no_callback_falls_back_to_auto_approve_flag(tmp_path):
    rec = Recorder(parallel_reads=1)
    call = ToolCall("bash_command", {"command": "make deploy"})

    strict = ToolExecutionScheduler(rec.registry(tmp_path), auto_approve_basic=True, auto_approve_commands=False)
    assert asyncio.run(strict.execute([call]))[0].error == REJECTED_MESSAGE

    yolo = ToolExecutionScheduler(rec.registry(tmp_path), auto_approve_basic=True, auto_approve_commands=True)
    assert asyncio.run(yolo.execute([call]))[0].success


def test_sequential_calls_wait_for_approval_in_order(tmp_path):
    rec = Recorder(parallel_reads=1)
    order = []

    async def approve(call, description):
        order.append(f"ask:{call.input['file_path']}")
        await asyncio.sleep(0)
        return True

    scheduler = ToolExecutionScheduler(rec.registry(tmp_path), request_approval=approve, auto_approve_basic=False)
    calls = [ToolCall("write_file", {"file_path": p, "content": "x"}) for p in ("1.py", "2.py")]
    asyncio.run(scheduler.execute(calls))
    assert order == ["ask:1.py", "ask:2.py"]
    assert rec.log == ["write:1.py", "write:2.py"]


def test_tool_events_are_emitted(tmp_path):
    rec = Recorder(parallel_reads=1)
    events = []
    scheduler = ToolExecutionScheduler(rec.registry(tmp_path), on_event=events.append, auto_approve_basic=True)
    asyncio.run(scheduler.execute([ToolCall("read_file", {"file_path": "a.py"}, id="e1")]))
    assert [e.type for e in events] == ["tool_call", "tool_result"]
    assert events[1].data["tool_use_id"] == "e1"
    assert events[1].data["success"] is True


def test_stop_skips_remaining_sequential_calls(tmp_path):
    rec = Recorder(parallel_reads=1)
    state = {"active": True}

    def approve(call, description):
        # Stop arrives while the first write is awaiting approval
        state["active"] = False
        return True

    scheduler = ToolExecutionScheduler(rec.registry(tmp_path), request_approval=approve, auto_approve_basic=False)
    calls = [
        ToolCall("read_file", {"file_path": "a.py"}, id="r1"),
        ToolCall("write_file", {"file_path": "1.py", "content": "x"}, id="w1"),
        ToolCall("write_file", {"file_path": "2.py", "content": "x"}, id="w2"),
        ToolCall("attempt_completion", {"result": "done"}, id="c1"),
    ]
    results = asyncio.run(scheduler.execute(calls, should_continue=lambda: state["active"]))

    assert rec.log == ["start:a.py", "end:a.py"]
    assert results[0].success
    assert [r.error for r in results[1:]] == [STOPPED_MESSAGE] * 3
    assert all(r.metadata["stopped"] for r in results[1:])

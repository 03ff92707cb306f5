"""
Tool execution scheduler.

A batch is de-duplicated, then partitioned by tool category: read-only calls
run concurrently, mutating and "other" calls run one at a time (approval
included), and completion calls run last. Results come back in the order of
the de-duplicated input.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from config import agent_config
from tools import COMPLETION, MUTATING, OTHER, READ_ONLY, ToolRegistry, ToolResult
from tools.dispatch import describe_tool_call, needs_approval

from .events import TOOL_CALL, TOOL_RESULT, AgentEvent, EventHook, emit
from .models import ToolCall

logger = logging.getLogger(__name__)

REJECTED_MESSAGE = "User rejected this operation."
STOPPED_MESSAGE = "Session stopped before this operation ran."

MODE_PARALLEL = "parallel"
MODE_SEQUENTIAL = "sequential"
MODE_COMPLETION = "completion"

ApprovalCallback = Callable[[ToolCall, str], Union[bool, Awaitable[bool]]]


def dedupe_tool_calls(tool_calls: List[ToolCall]) -> List[ToolCall]:
    """Drop calls whose name and serialized input repeat an earlier call; the first id wins."""
    seen = set()
    unique = []
    for call in tool_calls:
        if call.key in seen:
            logger.debug(f"Dropping duplicate call {call.name} ({call.id})")
            continue
        seen.add(call.key)
        unique.append(call)
    return unique


class ToolExecutionScheduler:
    """Runs a batch of tool calls against a registry."""

    def __init__(
        self,
        registry: ToolRegistry,
        request_approval: Optional[ApprovalCallback] = None,
        on_event: Optional[EventHook] = None,
        auto_approve_basic: Optional[bool] = None,
        auto_approve_commands: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.request_approval = request_approval
        self.on_event = on_event
        self.auto_approve_basic = (agent_config.auto_approve_basic_operations
                                   if auto_approve_basic is None else auto_approve_basic)
        self.auto_approve_commands = (agent_config.auto_approve_commands
                                      if auto_approve_commands is None else auto_approve_commands)
        self._clock = clock

    def partition(self, tool_calls: List[ToolCall]) -> Dict[str, List[ToolCall]]:
        groups: Dict[str, List[ToolCall]] = {READ_ONLY: [], MUTATING: [], OTHER: [], COMPLETION: []}
        for call in tool_calls:
            groups[self.registry.category(call.name)].append(call)
        return groups

    async def execute(self, tool_calls: List[ToolCall],
                      should_continue: Optional[Callable[[], bool]] = None) -> List[ToolResult]:
        """
        Run a batch. should_continue is polled before each sequential or
        completion call (and again after its approval); once it returns False
        the remaining calls are skipped with a failed result.
        """
        calls = dedupe_tool_calls(tool_calls)
        if not calls:
            return []
        groups = self.partition(calls)
        results: Dict[str, ToolResult] = {}
        logger.info(
            f"Executing {len(calls)} tool call(s): {len(groups[READ_ONLY])} read-only, "
            f"{len(groups[MUTATING])} mutating, {len(groups[OTHER])} other, {len(groups[COMPLETION])} completion"
        )

        if groups[READ_ONLY]:
            parallel = await asyncio.gather(*[self._run(c, MODE_PARALLEL) for c in groups[READ_ONLY]])
            for call, result in zip(groups[READ_ONLY], parallel):
                results[call.id] = result

        for call in groups[MUTATING] + groups[OTHER]:
            results[call.id] = await self._run_with_approval(call, MODE_SEQUENTIAL, should_continue)

        for call in groups[COMPLETION]:
            results[call.id] = await self._run_with_approval(call, MODE_COMPLETION, should_continue)

        return [results[c.id] for c in calls]

    async def _approve(self, call: ToolCall) -> bool:
        if not needs_approval(call.name, call.input, auto_approve_basic=self.auto_approve_basic):
            return True
        description = describe_tool_call(call.name, call.input)
        if self.request_approval is None:
            if not self.auto_approve_commands:
                logger.info(f"No approval callback, rejecting: {description}")
            return self.auto_approve_commands
        decision = self.request_approval(call, description)
        if inspect.isawaitable(decision):
            decision = await decision
        logger.info(f"Approval for {description}: {'granted' if decision else 'denied'}")
        return bool(decision)

    async def _run_with_approval(self, call: ToolCall, mode: str,
                                 should_continue: Optional[Callable[[], bool]] = None) -> ToolResult:
        def stopped() -> bool:
            return should_continue is not None and not should_continue()

        start = self._clock()
        if stopped():
            return await self._skip(call, mode, start, STOPPED_MESSAGE, "stopped")
        if not await self._approve(call):
            return await self._skip(call, mode, start, REJECTED_MESSAGE, "rejected")
        # Approval can take a while; the session may have been stopped meanwhile
        if stopped():
            return await self._skip(call, mode, start, STOPPED_MESSAGE, "stopped")
        return await self._run(call, mode)

    async def _skip(self, call: ToolCall, mode: str, start: float, message: str, flag: str) -> ToolResult:
        if flag == "stopped":
            logger.info(f"Skipping {call.name} ({call.id}): session stopped")
        result = ToolResult(success=False, error=message, metadata={flag: True})
        result = self._stamp(result, call, mode, start, self._clock())
        await emit(self.on_event, AgentEvent(type=TOOL_RESULT, content=message,
                                             data=self._event_data(call, result)))
        return result

    async def _run(self, call: ToolCall, mode: str) -> ToolResult:
        await emit(self.on_event, AgentEvent(type=TOOL_CALL, content=call.name,
                                             data={"tool_name": call.name, "tool_use_id": call.id,
                                                   "input": call.input}))
        loop = asyncio.get_running_loop()
        start = self._clock()
        try:
            result = await loop.run_in_executor(None, lambda: self.registry.execute(call.name, call.input))
        except Exception as e:
            logger.exception(f"Tool {call.name} raised")
            result = ToolResult(success=False, error=f"Tool error: {e}")
        result = self._stamp(result, call, mode, start, self._clock())
        logger.debug(f"{call.name} finished in {result.metadata['duration']:.3f}s (success={result.success})")
        await emit(self.on_event, AgentEvent(
            type=TOOL_RESULT,
            content=result.output if result.success else (result.error or "Unknown error"),
            data=self._event_data(call, result),
        ))
        return result

    @staticmethod
    def _stamp(result: ToolResult, call: ToolCall, mode: str, start: float, end: float) -> ToolResult:
        return result.with_metadata(
            tool_name=call.name,
            tool_use_id=call.id,
            start_time=start,
            end_time=end,
            duration=end - start,
            execution_mode=mode,
        )

    @staticmethod
    def _event_data(call: ToolCall, result: ToolResult) -> Dict[str, Any]:
        return {
            "tool_name": call.name,
            "tool_use_id": call.id,
            "success": result.success,
            "duration": result.metadata.get("duration"),
        }

"""
Main CodingAgent class that runs the session control loop.

Flow of one iteration:
1. Fit the history to the model's context window
2. Gate the call through the rate limiter
3. Call the provider (with retry)
4. Parse tool calls, falling back to text parsing when the structured channel is empty
5. Validate, check for repetition loops, execute, fold results into history
6. With no tool calls, decide whether the reply is the final answer
"""

import asyncio
import logging
import os
import time
import uuid
from typing import List, Optional, Callable, Awaitable, Any, Tuple

from config import agent_config, model_config, supports_tools
from tools import ToolRegistry, ToolResult, ToolValidationError, default_registry

from .completion import CompletionTriggerPolicy, FinalAnswerPolicy
from .errors import ProviderAuthError, SessionAlreadyActive
from .events import (
    ASSISTANT_TEXT, CONTEXT_TRUNCATED, ERROR, ITERATION_START, LOOP_DETECTED,
    SESSION_END, SESSION_START, AgentEvent, EventHook, emit,
)
from .execution import ApprovalCallback, ToolExecutionScheduler, dedupe_tool_calls
from .history import ContextWindowManager, DeletedRange
from .loop_guard import RepetitionDetector, corrective_message
from .models import (
    Message, Session, ToolCall, ToolResultRecord,
    ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER,
    STATUS_COMPLETED, STATUS_ERROR, STATUS_USER_STOPPED,
)
from .parsing import Parsed, ToolCallParser
from .prompts import (
    CONTINUE_ANALYSIS, MAX_ITERATIONS_SUMMARY, REQUEST_CLEAR_RESPONSE,
    REQUEST_DETAILED_ANSWER, SOLICIT_FINAL_ANSWER,
    compose_system_prompt, detect_project_language, fold_tool_results,
    goal_message, render_tool_calls, validation_error_message,
)
from .provider import LLMProvider, ProviderResponse
from .rate_limit import RateLimiter
from .retry import RetryConfig, with_retry
from .tokens import estimate_tokens, total_tokens

logger = logging.getLogger(__name__)


class CodingAgent:
    """
    Single-session coding agent.

    At most one session is active per instance; start_session raises
    SessionAlreadyActive otherwise. The loop runs as an asyncio task and
    stop_session is cooperative: a provider call already in flight finishes,
    a call still waiting on the rate limiter is not sent, no further tools
    run and no new iteration starts. A new session can only start once the
    stopped loop has drained.
    """

    def __init__(
        self,
        provider: LLMProvider,
        registry: Optional[ToolRegistry] = None,
        working_directory: Optional[str] = None,
        model_id: Optional[str] = None,
        max_iterations: Optional[int] = None,
        aggressiveness: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        detector: Optional[RepetitionDetector] = None,
        retry_config: Optional[RetryConfig] = None,
        final_answer_policy: Optional[FinalAnswerPolicy] = None,
        completion_policy: Optional[CompletionTriggerPolicy] = None,
        on_event: Optional[EventHook] = None,
        request_approval: Optional[ApprovalCallback] = None,
        auto_approve_basic: Optional[bool] = None,
        auto_approve_commands: Optional[bool] = None,
        session_store: Any = None,
        session_timeout: Optional[float] = None,
        result_preview_chars: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.provider = provider
        self.working_directory = os.path.abspath(working_directory or agent_config.working_directory)
        self.registry = registry or default_registry(self.working_directory)
        self.model_id = model_id or getattr(provider, "model_id", "") or model_config.model_id
        self.max_iterations = max_iterations or agent_config.max_iterations
        self.aggressiveness = aggressiveness or agent_config.context_aggressiveness
        self.session_timeout = agent_config.session_timeout if session_timeout is None else session_timeout
        self.result_preview_chars = result_preview_chars or agent_config.result_preview_chars
        self.on_event = on_event
        self.session_store = session_store
        self._clock = clock
        self._sleep = sleep

        self.context_manager = ContextWindowManager(self.model_id)
        self.rate_limiter = rate_limiter or RateLimiter()
        self.detector = detector or RepetitionDetector()
        self.retry_config = retry_config or RetryConfig()
        self.final_answer_policy = final_answer_policy or FinalAnswerPolicy()
        self.completion_policy = completion_policy or CompletionTriggerPolicy(clock=clock)
        self.scheduler = ToolExecutionScheduler(
            self.registry,
            request_approval=request_approval,
            on_event=on_event,
            auto_approve_basic=auto_approve_basic,
            auto_approve_commands=auto_approve_commands,
            clock=clock,
        )
        self.parser = ToolCallParser(self.registry.names(), coerce=self.registry.coerce)

        self.structured_tools = supports_tools(self.model_id)
        self.system_prompt = compose_system_prompt(
            self.working_directory,
            self.registry.definitions(),
            structured_tools=self.structured_tools,
            language=detect_project_language(self.working_directory),
        )

        self._session: Optional[Session] = None
        self._task: Optional[asyncio.Task] = None
        self._deleted_range: Optional[DeletedRange] = None
        # Kept after the session ends so callers can inspect the transcript
        self.last_session: Optional[Session] = None

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def start_session(self, goal: str) -> str:
        """Create a session and start its loop. Returns the session id."""
        draining = self._task is not None and not self._task.done()
        if draining or (self._session is not None and self._session.is_active):
            # A stopped loop may still be finishing its batch
            raise SessionAlreadyActive(self._session.id if self._session else "")

        session = Session(id=str(uuid.uuid4()), goal=goal, start_time=self._clock())
        session.messages = [
            Message(role=ROLE_SYSTEM, content=self.system_prompt),
            Message(role=ROLE_USER, content=goal_message(goal)),
        ]
        self._session = session
        self._deleted_range = None
        self.detector.clear()
        logger.info(f"Session {session.id} started: {goal[:100]}")
        self._task = asyncio.ensure_future(self._run(session))
        return session.id

    def stop_session(self) -> None:
        """Mark the active session user_stopped. Safe to call repeatedly."""
        session = self._session
        if session is None or not session.is_active:
            return
        session.finish(STATUS_USER_STOPPED)
        self.rate_limiter.cancel_waiting_requests()
        logger.info(f"Session {session.id} stopped by user")

    def get_session_status(self) -> Optional[Session]:
        return self._session

    async def wait(self) -> Optional[Session]:
        """Wait for the running loop, if any, and return the finished session."""
        if self._task is not None:
            await self._task
        return self.last_session

    async def run(self, goal: str) -> Session:
        """start_session + wait in one call."""
        await self.start_session(goal)
        return await self.wait()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self, session: Session) -> None:
        await emit(self.on_event, AgentEvent(type=SESSION_START, content=session.goal,
                                             data={"session_id": session.id}))
        try:
            while session.is_active:
                if session.iterations >= self.max_iterations:
                    logger.info(f"Reached max iterations ({self.max_iterations}), requesting summary")
                    await self._finish_with_summary(session)
                    break
                if self._timed_out(session):
                    logger.info(f"Session timeout ({self.session_timeout}s) reached, ending with partial results")
                    session.finish(STATUS_COMPLETED)
                    break

                session.iterations += 1
                logger.info(f"Iteration {session.iterations}")
                await emit(self.on_event, AgentEvent(type=ITERATION_START, content=str(session.iterations),
                                                     data={"iteration": session.iterations}))
                await self._iterate(session)

        except ProviderAuthError as e:
            logger.error(f"Provider authentication failed: {e}")
            session.finish(STATUS_ERROR, str(e))
            await emit(self.on_event, AgentEvent(type=ERROR, content=str(e)))
        except Exception as e:
            logger.error(f"Iteration {session.iterations} failed: {e}", exc_info=True)
            session.finish(STATUS_ERROR, f"{type(e).__name__}: {e}")
            await emit(self.on_event, AgentEvent(type=ERROR, content=str(e)))
        finally:
            if session.is_active:
                # Task cancelled from outside
                session.finish(STATUS_USER_STOPPED)
            self._end_session(session)
        await emit(self.on_event, AgentEvent(type=SESSION_END, content=session.status, data={
            "session_id": session.id,
            "status": session.status,
            "iterations": session.iterations,
            "error": session.error,
        }))

    def _end_session(self, session: Session) -> None:
        logger.info(f"Session {session.id} ended: {session.status} after {session.iterations} iteration(s)")
        self.last_session = session
        if self._session is session:
            self._session = None
        if self.session_store is not None:
            try:
                self.session_store.save(session)
            except OSError as e:
                logger.warning(f"Could not save session {session.id}: {e}")

    def _timed_out(self, session: Session) -> bool:
        if not self.session_timeout or self.session_timeout <= 0:
            return False
        return self._clock() - session.start_time >= self.session_timeout

    async def _iterate(self, session: Session) -> None:
        response = await self._call_provider(session)
        if response is None:
            return
        text, tool_calls = self._extract_tool_calls(response)

        content = text
        if tool_calls:
            rendered = render_tool_calls(tool_calls)
            content = f"{text}\n\n{rendered}" if text else rendered
        session.messages.append(Message(role=ROLE_ASSISTANT, content=content, tool_calls=tool_calls))
        if text:
            await emit(self.on_event, AgentEvent(type=ASSISTANT_TEXT, content=text))

        if not session.is_active:
            return
        if not tool_calls:
            self._handle_text_reply(session, text)
            return
        await self._handle_tool_calls(session, tool_calls)

    async def _call_provider(self, session: Session) -> Optional[ProviderResponse]:
        """One provider call for the current history. None if the session stopped before it was sent."""
        managed = self.context_manager.manage_context(session.messages, self.aggressiveness, self._deleted_range)
        if managed.deleted_range != self._deleted_range:
            await emit(self.on_event, AgentEvent(
                type=CONTEXT_TRUNCATED,
                content=f"Removed messages {managed.deleted_range[0]}-{managed.deleted_range[1]}",
                data={"deleted_range": managed.deleted_range, "strategy": managed.strategy},
            ))
        self._deleted_range = managed.deleted_range
        view = managed.messages

        estimated = total_tokens(view)
        request_id = f"{session.id}:{session.iterations}"
        await self.rate_limiter.check_rate_limit(estimated, request_id)
        if not session.is_active:
            logger.info(f"Session {session.id} stopped while waiting for rate limit, skipping call")
            return None

        loop = asyncio.get_running_loop()
        tools = self.registry.definitions() if self.structured_tools else None
        outcome = await with_retry(
            lambda: loop.run_in_executor(None, self.provider.send, view, tools),
            self.retry_config,
            name="LLM call",
            sleep=self._sleep,
        )
        response = outcome.unwrap()

        used = response.input_tokens + response.output_tokens
        if not used:
            used = estimated + estimate_tokens(response.text)
        self.rate_limiter.record_usage(used, request_id)
        return response

    def _extract_tool_calls(self, response: ProviderResponse) -> Tuple[str, List[ToolCall]]:
        text = response.text or ""
        if response.tool_calls:
            return text, list(response.tool_calls)
        if self.parser.looks_like_tool_text(text):
            parsed = self.parser.parse(text)
            if isinstance(parsed, Parsed):
                logger.info(f"Fallback parse found {len(parsed.tool_calls)} tool call(s) in reply text")
                return parsed.text, parsed.tool_calls
        return text, []

    def _handle_text_reply(self, session: Session, text: str) -> None:
        if self.final_answer_policy.is_final(text, session):
            session.final_answer = text
            session.finish(STATUS_COMPLETED)
            return
        prompt = REQUEST_DETAILED_ANSWER if text.strip() else REQUEST_CLEAR_RESPONSE
        session.messages.append(Message(role=ROLE_USER, content=prompt))

    async def _handle_tool_calls(self, session: Session, tool_calls: List[ToolCall]) -> None:
        calls = dedupe_tool_calls(tool_calls)
        valid: List[ToolCall] = []
        rejected: List[Tuple[ToolCall, ToolResult]] = []
        for call in calls:
            try:
                self.registry.validate(call.name, call.input)
                valid.append(call)
            except ToolValidationError as e:
                logger.info(f"Dropping invalid tool call: {e}")
                rejected.append((call, ToolResult(success=False, error=str(e))))

        if not valid:
            errors = [r.error for _, r in rejected]
            session.messages.append(Message(role=ROLE_USER,
                                            content=validation_error_message(self.registry.names(), errors)))
            return

        check = self.detector.check(valid, session.iterations)
        if check.is_loop:
            message = corrective_message(check)
            await emit(self.on_event, AgentEvent(type=LOOP_DETECTED, content=check.reason,
                                                 data={"suggestion": check.suggestion}))
            session.messages.append(Message(role=ROLE_USER, content=message))
            return

        results = await self.scheduler.execute(valid, should_continue=lambda: session.is_active)

        folded_calls = valid + [c for c, _ in rejected]
        folded_results = results + [r for _, r in rejected]
        if self.completion_policy.should_trigger(session, valid, results, self.detector.history):
            instruction = SOLICIT_FINAL_ANSWER
        else:
            instruction = CONTINUE_ANALYSIS
        session.messages.append(Message(
            role=ROLE_USER,
            content=fold_tool_results(folded_calls, folded_results, self.result_preview_chars, instruction),
            tool_results=[ToolResultRecord(c.id, r) for c, r in zip(folded_calls, folded_results)],
        ))

        for call, result in zip(valid, results):
            if result.success and result.metadata.get("completion"):
                session.final_answer = call.input.get("result") or result.output
                session.finish(STATUS_COMPLETED)
                logger.info(f"Session {session.id} completed via {call.name}")
                break

    async def _finish_with_summary(self, session: Session) -> None:
        session.messages.append(Message(role=ROLE_USER, content=MAX_ITERATIONS_SUMMARY))
        try:
            response = await self._call_provider(session)
        except ProviderAuthError:
            raise
        except Exception as e:
            logger.warning(f"Final summary call failed, completing without it: {e}")
        else:
            if response is None:
                return
            session.messages.append(Message(role=ROLE_ASSISTANT, content=response.text))
            if response.text:
                session.final_answer = response.text
                await emit(self.on_event, AgentEvent(type=ASSISTANT_TEXT, content=response.text))
        session.finish(STATUS_COMPLETED)

"""End-to-end control loop tests against a scripted provider."""

import asyncio

import pytest

from agent import (
    CodingAgent, ProviderAuthError, ProviderTransportError, RateLimiter, RepetitionDetector,
    RetryConfig, SessionAlreadyActive, ToolCall,
    STATUS_COMPLETED, STATUS_ERROR, STATUS_USER_STOPPED,
)
from agent import events as ev
from agent.prompts import (
    CONTINUE_ANALYSIS, MAX_ITERATIONS_SUMMARY, REQUEST_CLEAR_RESPONSE, REQUEST_DETAILED_ANSWER,
)
from conftest import ScriptedProvider, tool_reply
from sessions import SessionStore


def complete(result="Done."):
    return tool_reply(ToolCall("attempt_completion", {"result": result}))


def read(path):
    return ToolCall("read_file", {"file_path": path})


def make_agent(workspace, clock, replies, hook=None, model_id=None, **kw):
    provider = ScriptedProvider(replies, model_id=model_id) if model_id else ScriptedProvider(replies)
    events = []

    def on_event(event):
        events.append(event)
        if hook:
            hook(event)

    options = dict(
        working_directory=str(workspace),
        rate_limiter=RateLimiter(tokens_per_minute=10 ** 9, requests_per_minute=10 ** 6),
        detector=RepetitionDetector(clock=clock),
        retry_config=RetryConfig(max_retries=2, base_delay=0, max_delay=0, jitter=False),
        on_event=on_event,
        auto_approve_basic=True,
        auto_approve_commands=False,
        session_timeout=0,
        clock=clock,
        sleep=clock.sleep,
    )
    options.update(kw)
    return CodingAgent(provider, **options), provider, events


def test_completes_through_attempt_completion(workspace, clock):
    agent, provider, events = make_agent(workspace, clock, [
        tool_reply(ToolCall("list_directory", {"path": "."}), text="Looking around."),
        complete("main() returns 'hello'."),
    ])
    session = asyncio.run(agent.run("What does main return?"))

    assert session.status == STATUS_COMPLETED
    assert session.final_answer == "main() returns 'hello'."
    assert session.iterations == 2
    assert [m.role for m in session.messages] == ["system", "user", "assistant", "user", "assistant", "user"]
    assert session.messages[2].content.startswith("Looking around.\n\n<list_directory>")
    folded = session.messages[3]
    assert folded.content.startswith('[✓] list_directory {"path": "."}: Contents of directory .:')
    assert folded.content.endswith(CONTINUE_ANALYSIS)
    assert len(folded.tool_results) == 1
    assert agent.get_session_status() is None
    assert agent.last_session is session

    assert {t["name"] for t in provider.calls[0]["tools"]} == set(agent.registry.names())
    assert [m.role for m in provider.calls[0]["messages"]] == ["system", "user"]
    types = [e.type for e in events]
    assert types[0] == ev.SESSION_START
    assert types[-1] == ev.SESSION_END
    assert events[-1].data["status"] == STATUS_COMPLETED


def test_second_session_is_refused_while_active(workspace, clock):
    agent, provider, _ = make_agent(workspace, clock, [complete()])

    async def scenario():
        await agent.start_session("first goal")
        with pytest.raises(SessionAlreadyActive):
            await agent.start_session("second goal")
        agent.stop_session()
        agent.stop_session()
        return await agent.wait()

    session = asyncio.run(scenario())
    assert session.status == STATUS_USER_STOPPED
    assert session.iterations == 0
    assert provider.calls == []


def test_stop_without_session_is_a_no_op(workspace, clock):
    agent, _, _ = make_agent(workspace, clock, [])
    agent.stop_session()
    assert agent.get_session_status() is None


def test_stop_after_reply_runs_no_tools(workspace, clock):
    holder = {}

    def stop_on_reply(event):
        if event.type == ev.ASSISTANT_TEXT:
            holder["agent"].stop_session()

    agent, provider, _ = make_agent(workspace, clock, [
        tool_reply(ToolCall("write_file", {"file_path": "new.py", "content": "x = 1\n"}), text="Writing it."),
    ], hook=stop_on_reply)
    holder["agent"] = agent

    session = asyncio.run(agent.run("Create new.py"))
    assert session.status == STATUS_USER_STOPPED
    assert session.iterations == 1
    assert len(provider.calls) == 1
    assert not (workspace / "new.py").exists()


def test_stop_before_the_call_is_sent_skips_it(workspace, clock):
    holder = {}

    def stop_on_first_iteration(event):
        if event.type == ev.ITERATION_START:
            holder["agent"].stop_session()

    agent, provider, _ = make_agent(workspace, clock, [complete()], hook=stop_on_first_iteration)
    holder["agent"] = agent

    session = asyncio.run(agent.run("Anything"))
    assert session.status == STATUS_USER_STOPPED
    assert session.iterations == 1
    assert provider.calls == []


def test_stop_while_rate_limited_sends_nothing(workspace, clock):
    async def scenario():
        waiting = asyncio.Event()

        async def long_sleep(seconds):
            waiting.set()
            await asyncio.sleep(3600)

        limiter = RateLimiter(tokens_per_minute=100, requests_per_minute=50, max_wait_attempts=3,
                              clock=clock, sleep=long_sleep)
        limiter.record_usage(100)
        agent, provider, _ = make_agent(workspace, clock, [complete()], rate_limiter=limiter)

        await agent.start_session("Anything")
        await asyncio.wait_for(waiting.wait(), timeout=5)
        agent.stop_session()
        session = await asyncio.wait_for(agent.wait(), timeout=5)
        return session, provider

    session, provider = asyncio.run(scenario())
    assert session.status == STATUS_USER_STOPPED
    assert provider.calls == []


def test_stopped_loop_must_drain_before_next_session(workspace, clock):
    batch = tool_reply(
        ToolCall("write_file", {"file_path": "a.py", "content": "a = 1\n"}),
        ToolCall("write_file", {"file_path": "b.py", "content": "b = 1\n"}),
    )
    second_write = tool_reply(ToolCall("write_file", {"file_path": "c.py", "content": "c = 1\n"}))

    async def scenario():
        asked = asyncio.Event()
        gate = asyncio.Event()

        async def approve(call, description):
            asked.set()
            await gate.wait()
            return True

        agent, _, _ = make_agent(workspace, clock, [batch, second_write, complete()],
                                 request_approval=approve, auto_approve_basic=False)
        await agent.start_session("first")
        await asyncio.wait_for(asked.wait(), timeout=5)

        agent.stop_session()
        with pytest.raises(SessionAlreadyActive):
            await agent.start_session("second")
        gate.set()
        first = await asyncio.wait_for(agent.wait(), timeout=5)

        await agent.start_session("second")
        second = await asyncio.wait_for(agent.wait(), timeout=5)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.status == STATUS_USER_STOPPED
    assert second.status == STATUS_COMPLETED
    assert sorted(p.name for p in workspace.glob("*.py")) == ["c.py"]
    folded = first.messages[3].content
    assert '[✗] write_file {"content": "a = 1\\n", "file_path": "a.py"}: Session stopped' in folded
    assert '"file_path": "b.py"}: Session stopped before this operation ran.' in folded


def test_failed_command_output_reaches_the_model(workspace, clock):
    async def allow(call, description):
        return True

    agent, _, _ = make_agent(workspace, clock, [
        tool_reply(ToolCall("bash_command", {"command": "X=BOOM; echo $X-DETAIL >&2; exit 3"})),
        complete(),
    ], request_approval=allow)
    session = asyncio.run(agent.run("Run the build"))

    folded = session.messages[3].content
    assert ": Command exited with code 3\n[exit code: 3]\n" in folded
    assert "BOOM-DETAIL" in folded


def test_repeated_calls_trigger_loop_correction(workspace, clock):
    agent, _, events = make_agent(workspace, clock, [
        tool_reply(read("README.md")),
        tool_reply(read("README.md")),
        tool_reply(read("README.md")),
        complete("The README describes a demo project."),
    ])
    session = asyncio.run(agent.run("Summarize the README"))

    assert session.status == STATUS_COMPLETED
    assert any(e.type == ev.LOOP_DETECTED for e in events)
    corrections = [m for m in session.messages if m.content.startswith("STOP: Infinite loop detected.")]
    assert len(corrections) == 1
    reads = [e for e in events if e.type == ev.TOOL_RESULT and e.data["tool_name"] == "read_file"]
    assert len(reads) == 2


def test_auth_failure_ends_session_with_error(workspace, clock):
    agent, provider, events = make_agent(workspace, clock, [
        ProviderAuthError("The security token included in the request is expired"),
    ])
    session = asyncio.run(agent.run("Anything"))

    assert session.status == STATUS_ERROR
    assert session.error == "The security token included in the request is expired"
    assert len(provider.calls) == 1
    assert ev.ERROR in [e.type for e in events]


def test_transport_errors_are_retried(workspace, clock):
    agent, provider, _ = make_agent(workspace, clock, [
        ProviderTransportError("503 service unavailable"),
        complete("Recovered."),
    ])
    session = asyncio.run(agent.run("Anything"))
    assert session.status == STATUS_COMPLETED
    assert session.final_answer == "Recovered."
    assert len(provider.calls) == 2


def test_exhausted_retries_end_session_with_error(workspace, clock):
    agent, provider, _ = make_agent(workspace, clock, [
        ProviderTransportError("connection reset") for _ in range(3)
    ])
    session = asyncio.run(agent.run("Anything"))
    assert session.status == STATUS_ERROR
    assert "connection reset" in session.error
    assert len(provider.calls) == 3


def test_tool_calls_in_reply_text_are_recovered(workspace, clock):
    agent, _, _ = make_agent(workspace, clock, [
        "I'll read it.\n<read_file><file_path>src/app.py</file_path></read_file>",
        complete(),
    ])
    session = asyncio.run(agent.run("Read the app"))

    assistant = session.messages[2]
    assert [c.name for c in assistant.tool_calls] == ["read_file"]
    assert assistant.content == 'I\'ll read it.\n\n<read_file>{"file_path": "src/app.py"}</read_file>'
    assert session.messages[3].content.startswith('[✓] read_file {"file_path": "src/app.py"}: [2 lines total]')


def test_text_only_model_gets_no_tool_definitions(workspace, clock):
    agent, provider, _ = make_agent(workspace, clock, [
        '<attempt_completion><result>Nothing to do.</result></attempt_completion>',
    ], model_id="meta.llama3-1-70b-instruct-v1:0")
    session = asyncio.run(agent.run("Check the project"))

    assert not agent.structured_tools
    assert provider.calls[0]["tools"] is None
    assert "Call tools with XML tags" in provider.calls[0]["messages"][0].content
    assert session.final_answer == "Nothing to do."


def test_max_iterations_asks_for_summary(workspace, clock):
    agent, provider, _ = make_agent(workspace, clock, [
        tool_reply(read("src/app.py")),
        tool_reply(ToolCall("list_directory", {"path": "."})),
        "Summary: main() returns 'hello'.",
    ], max_iterations=2)
    session = asyncio.run(agent.run("Explain the app"))

    assert session.status == STATUS_COMPLETED
    assert session.iterations == 2
    assert session.final_answer == "Summary: main() returns 'hello'."
    assert provider.calls[2]["messages"][-1].content == MAX_ITERATIONS_SUMMARY


def test_invalid_calls_get_a_validation_message(workspace, clock):
    agent, _, _ = make_agent(workspace, clock, [
        tool_reply(ToolCall("read_file", {})),
        complete(),
    ])
    session = asyncio.run(agent.run("Read something"))

    message = session.messages[3].content
    assert message.startswith("The tool calls you provided had validation errors.")
    assert "Missing required parameter: file_path" in message
    assert session.status == STATUS_COMPLETED


def test_invalid_calls_are_folded_beside_valid_ones(workspace, clock):
    agent, _, _ = make_agent(workspace, clock, [
        tool_reply(read("README.md"), ToolCall("edit_file", {"file_path": "README.md"})),
        complete(),
    ])
    session = asyncio.run(agent.run("Fix the README"))

    folded = session.messages[3]
    assert folded.content.startswith('[✓] read_file {"file_path": "README.md"}')
    assert '[✗] edit_file {"file_path": "README.md"}: Invalid input for edit_file' in folded.content
    assert [r.result.success for r in folded.tool_results] == [True, False]


def test_rejected_command_is_reported_to_the_model(workspace, clock):
    async def deny(call, description):
        return False

    agent, _, _ = make_agent(workspace, clock, [
        tool_reply(ToolCall("bash_command", {"command": "make deploy"})),
        complete(),
    ], request_approval=deny)
    session = asyncio.run(agent.run("Deploy"))
    assert '[✗] bash_command {"command": "make deploy"}: User rejected this operation.' in session.messages[3].content


def test_text_replies_are_nudged_until_final(workspace, clock):
    agent, _, _ = make_agent(workspace, clock, ["Hmm.", "", "Done."])
    session = asyncio.run(agent.run("Anything"))

    assert session.status == STATUS_COMPLETED
    assert session.final_answer == "Done."
    assert session.iterations == 3
    user_prompts = [m.content for m in session.messages if m.role == "user"][1:]
    assert user_prompts == [REQUEST_DETAILED_ANSWER, REQUEST_CLEAR_RESPONSE]


def test_substantial_concluding_reply_is_final(workspace, clock):
    answer = ("Based on the code in src/app.py, main() takes no arguments and returns the string "
              "'hello'. Nothing else in the project calls it, so the return value is only observable "
              "from tests or an interactive session.")
    agent, _, _ = make_agent(workspace, clock, [answer])
    session = asyncio.run(agent.run("What does main return?"))
    assert session.iterations == 1
    assert session.final_answer == answer


def test_session_timeout_completes_with_partial_results(workspace, clock):
    def slow_iterations(event):
        if event.type == ev.ITERATION_START:
            clock.advance(11)

    agent, provider, _ = make_agent(workspace, clock, [
        tool_reply(read("README.md")),
        complete("never reached"),
    ], hook=slow_iterations, session_timeout=10)
    session = asyncio.run(agent.run("Anything"))

    assert session.status == STATUS_COMPLETED
    assert session.final_answer is None
    assert session.iterations == 1
    assert len(provider.calls) == 1


def test_finished_session_is_saved(workspace, clock):
    store = SessionStore(base_dir=str(workspace / ".agent_sessions"), working_directory=str(workspace),
                         model_id="claude-test")
    agent, _, _ = make_agent(workspace, clock, [
        tool_reply(read("README.md")),
        complete("Saved."),
    ], session_store=store)
    session = asyncio.run(agent.run("Read and finish"))

    record = store.load(session.id)
    assert record.status == STATUS_COMPLETED
    assert record.final_answer == "Saved."
    restored = record.to_session()
    assert restored.messages[3].tool_results[0].result.success
    assert restored.messages[2].tool_calls[0].name == "read_file"


def test_new_session_can_start_after_the_previous_one_ends(workspace, clock):
    agent, _, _ = make_agent(workspace, clock, [complete("one"), complete("two")])

    async def scenario():
        first = await agent.run("first")
        second = await agent.run("second")
        return first, second

    first, second = asyncio.run(scenario())
    assert (first.final_answer, second.final_answer) == ("one", "two")
    assert first.id != second.id
    assert agent.last_session is second

import json
import os

import pytest

from agent.models import Message, Session, ToolCall, ToolResultRecord, STATUS_COMPLETED, STATUS_ERROR
from sessions import SessionStore, _dir_hash
from tools import ToolResult


@pytest.fixture
def store(tmp_path):
    return SessionStore(base_dir=str(tmp_path / "sessions"), working_directory=str(tmp_path / "project"),
                        model_id="test-model")


def finished_session(session_id="s1", status=STATUS_COMPLETED):
    call = ToolCall("read_file", {"file_path": "a.py"}, id="tool_1")
    session = Session(id=session_id, goal="Read a.py", messages=[
        Message(role="system", content="prompt"),
        Message(role="user", content="Read a.py"),
        Message(role="assistant", content="<read_file>{}</read_file>", tool_calls=[call]),
        Message(role="user", content="[✓] read_file", tool_results=[
            ToolResultRecord("tool_1", ToolResult(success=True, output="x = 1", metadata={"duration": 0.1})),
        ]),
    ], iterations=1)
    session.finish(status, "boom" if status == STATUS_ERROR else None)
    return session


def test_save_and_load(store):
    path = store.save(finished_session())
    assert os.path.basename(path) == f"{_dir_hash(store.working_directory)}_s1.json"
    assert not os.path.exists(path + ".tmp")

    record = store.load("s1")
    assert record.status == STATUS_COMPLETED
    assert record.model_id == "test-model"
    assert record.message_count == 4
    restored = record.to_session()
    assert restored.messages[2].tool_calls[0].input == {"file_path": "a.py"}
    assert restored.messages[3].tool_results[0].result.output == "x = 1"


def test_resave_keeps_created_at(store):
    session = finished_session()
    store.save(session)
    created = store.load("s1").created_at
    session.final_answer = "updated"
    store.save(session)
    record = store.load("s1")
    assert record.created_at == created
    assert record.final_answer == "updated"


def test_list_sessions_is_scoped_to_working_directory(store, tmp_path):
    store.save(finished_session("a"))
    store.save(finished_session("b", status=STATUS_ERROR))
    other = SessionStore(base_dir=store.base_dir, working_directory=str(tmp_path / "elsewhere"))
    other.save(finished_session("c"))

    assert {r.session_id for r in store.list_sessions()} == {"a", "b"}
    assert [r.session_id for r in other.list_sessions()] == ["c"]
    assert store.get_latest().session_id in {"a", "b"}
    assert store.load("b").error == "boom"


def test_delete(store):
    store.save(finished_session())
    assert store.delete("s1") is True
    assert store.load("s1") is None
    assert store.delete("s1") is False


def test_corrupt_files_are_skipped(store):
    store.save(finished_session("good"))
    bad = os.path.join(store.base_dir, f"{_dir_hash(store.working_directory)}_bad.json")
    with open(bad, "w", encoding="utf-8") as f:
        f.write("{not json")
    assert [r.session_id for r in store.list_sessions()] == ["good"]
    assert store.load("bad") is None


def test_saved_file_is_plain_json(store):
    path = store.save(finished_session())
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    assert data["goal"] == "Read a.py"
    assert data["messages"][3]["tool_results"][0]["result"]["metadata"] == {"duration": 0.1}

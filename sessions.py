"""
Transcript persistence for the agent loop.

Finished sessions are written as one JSON file each so a stopped or failed
run can be inspected after the process exits. Files are grouped per
workspace by a short hash of its absolute path.
"""

import hashlib
import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from config import agent_config
from tools import ToolResult

from agent.models import Message, Session, ToolCall, ToolResultRecord

logger = logging.getLogger(__name__)

SESSION_VERSION = 1


@dataclass
class SessionRecord:
    """On-disk form of a finished session."""
    session_id: str = ""
    version: int = SESSION_VERSION
    working_directory: str = ""
    model_id: str = ""
    goal: str = ""
    status: str = ""
    iterations: int = 0
    error: Optional[str] = None
    final_answer: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    messages: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_session(cls, session: Session, working_directory: str, model_id: str) -> "SessionRecord":
        return cls(
            session_id=session.id,
            working_directory=working_directory,
            model_id=model_id,
            goal=session.goal,
            status=session.status,
            iterations=session.iterations,
            error=session.error,
            final_answer=session.final_answer,
            messages=session.to_dict()["messages"],
        )

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def to_session(self) -> Session:
        """Rebuild the in-memory Session, tool calls and results included."""
        def message(raw: Dict[str, Any]) -> Message:
            return Message(
                role=raw.get("role", ""),
                content=raw.get("content", ""),
                token_count=raw.get("token_count"),
                tool_calls=[ToolCall(**c) for c in raw.get("tool_calls", [])],
                tool_results=[
                    ToolResultRecord(r.get("tool_call_id", ""), ToolResult(**r.get("result", {"success": False})))
                    for r in raw.get("tool_results", [])
                ],
            )

        return Session(
            id=self.session_id,
            goal=self.goal,
            messages=[message(m) for m in self.messages],
            status=self.status,
            iterations=self.iterations,
            error=self.error,
            final_answer=self.final_answer,
        )


def _dir_hash(working_directory: str) -> str:
    return hashlib.sha256(os.path.abspath(working_directory).encode()).hexdigest()[:12]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionStore:
    """
    JSON transcripts under base_dir, named {dir_hash}_{session_id}.json.

    Writes go through a temporary file and os.replace so a crash never
    leaves a half-written transcript behind.
    """

    def __init__(self, base_dir: str = agent_config.session_dir, working_directory: str = ".", model_id: str = ""):
        self.base_dir = base_dir
        self.working_directory = os.path.abspath(working_directory)
        self.model_id = model_id
        os.makedirs(self.base_dir, exist_ok=True)

    def save(self, session: Session) -> str:
        path = self._path_for(session.id)
        previous = self._read_file(path) if os.path.exists(path) else None
        record = SessionRecord.from_session(session, self.working_directory, self.model_id)
        record.updated_at = _now_iso()
        record.created_at = previous.created_at if previous else record.updated_at

        staging = f"{path}.tmp"
        try:
            with open(staging, "w", encoding="utf-8") as fh:
                json.dump(asdict(record), fh, indent=2, ensure_ascii=False, default=str)
            os.replace(staging, path)
        except OSError:
            if os.path.exists(staging):
                os.remove(staging)
            raise
        logger.info(f"Session {session.id} written to {path} ({record.message_count} messages)")
        return path

    def load(self, session_id: str) -> Optional[SessionRecord]:
        path = self._path_for(session_id)
        return self._read_file(path) if os.path.exists(path) else None

    def delete(self, session_id: str) -> bool:
        """Remove a transcript. False if there was none."""
        path = self._path_for(session_id)
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        logger.info(f"Session {session_id} deleted")
        return True

    def list_sessions(self, working_directory: Optional[str] = None) -> List[SessionRecord]:
        """Transcripts for one workspace (default: this store's), newest first."""
        prefix = _dir_hash(working_directory or self.working_directory) + "_"
        names = [n for n in os.listdir(self.base_dir) if n.startswith(prefix) and n.endswith(".json")]
        records = [self._read_file(os.path.join(self.base_dir, n)) for n in names]
        return sorted((r for r in records if r), key=lambda r: r.updated_at or "", reverse=True)

    def get_latest(self, working_directory: Optional[str] = None) -> Optional[SessionRecord]:
        records = self.list_sessions(working_directory)
        return records[0] if records else None

    def _path_for(self, session_id: str) -> str:
        return os.path.join(self.base_dir, f"{_dir_hash(self.working_directory)}_{session_id}.json")

    def _read_file(self, path: str) -> Optional[SessionRecord]:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return SessionRecord.from_dict(json.load(fh))
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Skipping unreadable session file {path}: {e}")
            return None

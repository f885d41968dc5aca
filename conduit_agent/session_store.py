"""Session persistence: one JSON file per session plus an index."""

import json
import os
import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import SESSIONS_DIR
from .logger import get_logger
from .session import Session

_log = get_logger(__name__)

INDEX_FILE = "index.json"
INDEX_VERSION = 1
DEFAULT_SESSION_NAME = "New Session"
MAX_TITLE_LENGTH = 50
_FILE_REF_RE = re.compile(r"@[\w./\\-]+")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SessionInfo:
    id: str
    name: str
    created_at: int
    updated_at: int
    token_usage: int = 0
    message_count: int = 0
    model_id: str = ""
    is_active: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "tokenUsage": self.token_usage,
            "messageCount": self.message_count,
            "modelId": self.model_id,
            "isActive": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionInfo":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or DEFAULT_SESSION_NAME),
            created_at=int(data.get("createdAt") or 0),
            updated_at=int(data.get("updatedAt") or 0),
            token_usage=int(data.get("tokenUsage") or 0),
            message_count=int(data.get("messageCount") or 0),
            model_id=str(data.get("modelId") or ""),
            is_active=bool(data.get("isActive", False)),
        )


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write to a temp file and rename it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    os.replace(tmp, path)


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return None
    return data if isinstance(data, dict) else None


class SessionStore:
    """Index of saved sessions and the currently active one.

    Call :meth:`initialize` once at startup; it loads (or rebuilds) the
    index and guarantees an active session exists.
    """

    def __init__(self, directory: Path = SESSIONS_DIR, model_id: str = ""):
        self.directory = Path(directory)
        self.index_path = self.directory / INDEX_FILE
        self.model_id = model_id
        self._sessions: Dict[str, SessionInfo] = {}
        self._active_id: Optional[str] = None

    def initialize(self) -> SessionInfo:
        self.directory.mkdir(parents=True, exist_ok=True)
        if self.index_path.exists():
            index = _read_json(self.index_path)
            if index is None or not isinstance(index.get("sessions"), list):
                _log.error("Session index is corrupt, rebuilding from session files")
                self._rebuild_index()
            else:
                for raw in index["sessions"]:
                    if isinstance(raw, dict) and raw.get("id"):
                        info = SessionInfo.from_dict(raw)
                        self._sessions[info.id] = info
                active = index.get("activeSessionId")
                self._active_id = active if active in self._sessions else None

        if not self._sessions:
            info = self.create_session()
            self.set_active_session_id(info.id)
        elif self._active_id is None:
            self.set_active_session_id(self.list_sessions()[0].id)
        return self.get_active_session()

    def _rebuild_index(self) -> None:
        self._sessions.clear()
        for path in sorted(self.directory.glob("*.json")):
            if path.name == INDEX_FILE:
                continue
            data = _read_json(path)
            info = data.get("info") if data else None
            if not isinstance(info, dict) or not info.get("id"):
                _log.warning("Skipping corrupt session file %s", path.name)
                continue
            parsed = SessionInfo.from_dict(info)
            self._sessions[parsed.id] = parsed
        self._save_index()

    def _save_index(self) -> None:
        index = {
            "version": INDEX_VERSION,
            "activeSessionId": self._active_id,
            "sessions": [info.to_dict() for info in self._sessions.values()],
        }
        try:
            _write_json(self.index_path, index)
        except OSError as e:
            _log.error("Failed to save session index: %s", e)

    def _session_path(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.json"

    # ── queries ──

    def list_sessions(self) -> List[SessionInfo]:
        """All sessions, most recently updated first."""
        return sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)

    def get_session_by_id(self, session_id: str) -> Optional[SessionInfo]:
        return self._sessions.get(session_id)

    def get_active_session_id(self) -> Optional[str]:
        return self._active_id

    def get_active_session(self) -> Optional[SessionInfo]:
        if self._active_id is None:
            return None
        return self._sessions.get(self._active_id)

    # ── lifecycle ──

    def create_session(self, name: Optional[str] = None) -> SessionInfo:
        now = _now_ms()
        info = SessionInfo(
            id=str(uuid.uuid4()),
            name=name or DEFAULT_SESSION_NAME,
            created_at=now,
            updated_at=now,
            model_id=self.model_id,
        )
        self._sessions[info.id] = info
        self._write_session(info, Session().to_state())
        self._save_index()
        return info

    def save_session(self, session: Session, session_id: str) -> bool:
        info = self._sessions.get(session_id)
        if info is None:
            return False
        info.updated_at = _now_ms()
        info.token_usage = session.get_used_tokens()
        info.message_count = session.message_count
        if self.model_id:
            info.model_id = self.model_id
        ok = self._write_session(info, session.to_state())
        self._save_index()
        return ok

    def _write_session(self, info: SessionInfo, state: Dict[str, Any]) -> bool:
        data = {"info": info.to_dict(), **state}
        try:
            _write_json(self._session_path(info.id), data)
        except OSError as e:
            _log.error("Failed to save session %s: %s", info.id, e)
            return False
        return True

    def load_state(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Raw persisted state for ``session_id``, or None if unreadable."""
        if session_id not in self._sessions:
            return None
        path = self._session_path(session_id)
        if not path.exists():
            _log.warning("Session file not found: %s", session_id)
            return None
        data = _read_json(path)
        if data is None:
            _log.error("Failed to load session %s", session_id)
        return data

    def load_session(self, session_id: str, **session_kwargs) -> Optional[Session]:
        """Rebuild a :class:`Session`, repairing any broken tool-call pairing."""
        state = self.load_state(session_id)
        if state is None:
            return None
        session = Session.from_state(state, **session_kwargs)
        session.repair_messages()
        return session

    def delete_session(self, session_id: str) -> bool:
        """Delete a saved session; the active session cannot be deleted."""
        if session_id not in self._sessions or session_id == self._active_id:
            return False
        try:
            self._session_path(session_id).unlink(missing_ok=True)
        except OSError as e:
            _log.error("Failed to delete session file %s: %s", session_id, e)
        del self._sessions[session_id]
        self._save_index()
        return True

    def set_active_session_id(self, session_id: str) -> bool:
        if session_id not in self._sessions:
            return False
        for info in self._sessions.values():
            info.is_active = info.id == session_id
        self._active_id = session_id
        self._save_index()
        return True

    def rename_session(self, session_id: str, name: str) -> bool:
        info = self._sessions.get(session_id)
        if info is None:
            return False
        info.name = name
        info.updated_at = _now_ms()
        self._save_index()
        return True

    def title_from_first_message(self, session_id: str, message: str) -> None:
        """Name a still-untitled session after its first user message."""
        info = self._sessions.get(session_id)
        if info is not None and info.name == DEFAULT_SESSION_NAME:
            self.rename_session(session_id, self.generate_title_from_message(message))

    @staticmethod
    def generate_title_from_message(message: str) -> str:
        title = (message or "").strip().split("\n", 1)[0]
        title = _FILE_REF_RE.sub("", title).strip()
        if len(title) > MAX_TITLE_LENGTH:
            title = title[:MAX_TITLE_LENGTH - 3] + "..."
        return title or DEFAULT_SESSION_NAME

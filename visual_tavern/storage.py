"""Session persistence and the two-tier session store.

SessionStore keeps an in-process cache in front of a persistence backend
matching the SessionPersistence protocol. Callers only ever talk to the
store, so the tiering is invisible to them.

Every read-modify-write of one session must run under ``store.lock(id)``;
different sessions never share a lock.

JsonFileStorage layout:

    {base}/
      sessions/
        {session_id}/
          session.json         ← scalar state, scene pointer, events
          worldSetting.json    ← reference data, one file per section
          npcSetting.json
          sceneSetting.json
          history.json         ← conversation + interaction history
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import re
import weakref
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from .errors import (
    HistoryIndexError,
    InvalidContentError,
    InvalidInputError,
    InvalidReferenceData,
    NoHistoryError,
    SessionNotFound,
)
from .models import (
    EditResult,
    HistoryEntry,
    ReferenceData,
    SceneChange,
    Session,
    WorldSession,
    now_iso,
    session_from_dict,
)

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_\-]+$")

_SETTING_FILES = {
    "worldSetting": "worldSetting.json",
    "npcSetting": "npcSetting.json",
    "sceneSetting": "sceneSetting.json",
}
_HISTORY_KEYS = ("conversationHistory", "interactionHistory")


# ---------------------------------------------------------------------------
# Persistence backends
# ---------------------------------------------------------------------------

class SessionPersistence(Protocol):
    def load(self, session_id: str) -> dict[str, Any] | None: ...

    def save(self, session_id: str, data: dict[str, Any]) -> None: ...


class MemoryStorage:
    """Keeps serialised sessions in a dict. Used in tests and for ephemeral play."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    def load(self, session_id: str) -> dict[str, Any] | None:
        data = self._data.get(session_id)
        return copy.deepcopy(data) if data is not None else None

    def save(self, session_id: str, data: dict[str, Any]) -> None:
        self._data[session_id] = copy.deepcopy(data)


class JsonFileStorage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._sessions_root = base_path / "sessions"
        self._sessions_root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _session_dir(self, session_id: str) -> Path:
        if not _SESSION_ID_RE.match(session_id):
            raise InvalidInputError(f"Invalid session id: {session_id!r}")
        return self._sessions_root / session_id

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text(encoding="utf-8"))

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")

    # ------------------------------------------------------------------
    # SessionPersistence
    # ------------------------------------------------------------------

    def load(self, session_id: str) -> dict[str, Any] | None:
        session_dir = self._session_dir(session_id)
        session_path = session_dir / "session.json"
        if not session_path.is_file():
            return None

        data = self._read_json(session_path)
        for key, filename in _SETTING_FILES.items():
            path = session_dir / filename
            if path.is_file():
                data[key] = self._read_json(path)

        history_path = session_dir / "history.json"
        if history_path.is_file():
            history = self._read_json(history_path)
            data["conversationHistory"] = history.get("history", [])
            data["interactionHistory"] = history.get("interactions", [])
        return data

    def save(self, session_id: str, data: dict[str, Any]) -> None:
        session_dir = self._session_dir(session_id)
        session_dir.mkdir(exist_ok=True)

        core = {k: v for k, v in data.items()
                if k not in _SETTING_FILES and k not in _HISTORY_KEYS}
        self._write_json(session_dir / "session.json", core)

        for key, filename in _SETTING_FILES.items():
            if key in data:
                self._write_json(session_dir / filename, data[key])

        history = data.get("conversationHistory", [])
        interactions = data.get("interactionHistory", [])
        self._write_json(session_dir / "history.json", {
            "sessionId": session_id,
            "history": history,
            "interactions": interactions,
            "lastUpdated": now_iso(),
            "totalMessages": len(history),
            "totalInteractions": len(interactions),
        })


def load_reference_data(directory: Path) -> ReferenceData:
    """Read worldSetting.json, npcSetting.json and sceneSetting.json from a preset directory."""
    sections: dict[str, Any] = {}
    for key, filename in _SETTING_FILES.items():
        path = directory / filename
        if not path.is_file():
            raise InvalidReferenceData(f"Missing required setting file: {path}")
        sections[key] = json.loads(path.read_text(encoding="utf-8"))
    return validate_reference_data(sections)


def validate_reference_data(data: ReferenceData | dict[str, Any]) -> ReferenceData:
    if isinstance(data, ReferenceData):
        return data
    try:
        return ReferenceData.model_validate(data)
    except ValidationError as e:
        raise InvalidReferenceData(f"Invalid reference data: {e}") from e


# ---------------------------------------------------------------------------
# SessionStore
# ---------------------------------------------------------------------------

class SessionStore:
    def __init__(self, storage: SessionPersistence) -> None:
        self._storage = storage
        self._cache: dict[str, Session] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock(self, session_id: str) -> asyncio.Lock:
        """Advisory lock serialising mutations of one session.

        Locks are held weakly: one nobody holds or waits on is dropped.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Create / load / save
    # ------------------------------------------------------------------

    def create(
        self,
        session_id: str,
        reference: ReferenceData | dict[str, Any],
        mode: str = "visual",
    ) -> Session:
        """Create a session starting in the first scene of the scene list."""
        if self.get(session_id) is not None:
            raise InvalidInputError(f"Session already exists: {session_id}")
        ref = validate_reference_data(reference).model_copy(deep=True)
        first_scene = ref.scene_setting.scenes[0].id

        cls = WorldSession if mode == "world_interaction" else Session
        session = cls(
            session_id=session_id,
            world_setting=ref.world_setting,
            npc_setting=ref.npc_setting,
            scene_setting=ref.scene_setting,
            current_scene=first_scene,
            visited_scenes=[first_scene],
        )
        self.save(session)
        logger.info("Created %s session %s in scene %s", session.mode, session_id, first_scene)
        return session

    def get(self, session_id: str) -> Session | None:
        """Cache first, then persistence. Populating the cache is the only side effect."""
        session = self._cache.get(session_id)
        if session is not None:
            return session
        data = self._storage.load(session_id)
        if data is None:
            return None
        session = session_from_dict(data)
        self._cache[session_id] = session
        return session

    def load(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def save(self, session: Session) -> None:
        session.updated_at = now_iso()
        self._cache[session.session_id] = session
        self._storage.save(session.session_id, session.model_dump(by_alias=True, mode="json"))

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def append_exchange(self, session: Session, role: str, content: str) -> None:
        session.conversation_history.append(HistoryEntry(role=role, content=content))
        self.save(session)

    def replace_tail(self, session: Session, start: int, entries: list[HistoryEntry]) -> None:
        """Keep history[:start], then append entries. Used to commit a finished exchange."""
        session.conversation_history = session.conversation_history[:start] + entries
        self.save(session)

    def edit(self, session: Session, index: int, new_content: Any) -> EditResult:
        """Rewrite one entry and discard every entry after it."""
        history = session.conversation_history
        if not 0 <= index < len(history):
            raise HistoryIndexError(
                f"Invalid history index: {index}. History length: {len(history)}"
            )
        if not isinstance(new_content, str) or not new_content:
            raise InvalidContentError("New content must be a non-empty string")

        previous = history[index].content
        history[index].content = new_content
        deleted = len(history) - (index + 1)
        session.conversation_history = history[:index + 1]
        self.save(session)
        logger.info("Edited history of %s at %d, discarded %d entries", session.session_id, index, deleted)
        return EditResult(
            edited_index=index,
            deleted_count=deleted,
            previous_content=previous,
            total_messages=len(session.conversation_history),
        )

    def regenerate_target(self, session: Session, index: int | None = None) -> int:
        """Resolve the user entry a regenerate starts from (default: the last one)."""
        history = session.conversation_history
        if not history:
            raise NoHistoryError("No conversation history to regenerate from")

        target = index
        if target is None:
            target = next(
                (i for i in range(len(history) - 1, -1, -1) if history[i].role == "user"),
                -1,
            )
        if not 0 <= target < len(history):
            raise HistoryIndexError(f"Invalid history index: {target}")
        if history[target].role != "user":
            raise HistoryIndexError(
                f"History index {target} is not a user message. "
                "Can only regenerate from user messages."
            )
        return target

    # ------------------------------------------------------------------
    # Scene pointer
    # ------------------------------------------------------------------

    def apply_scene_change(self, session: Session, step: SceneChange) -> bool:
        """Move the scene pointer. Unknown scene ids are ignored."""
        scene = session.scene_by_id(step.scene_id)
        if scene is None:
            logger.warning("Ignoring scene change to unknown scene %r", step.scene_id)
            return False
        if scene.id != session.current_scene:
            logger.info("Scene changed from %s to %s", session.current_scene, scene.id)
        session.current_scene = scene.id
        if scene.id not in session.visited_scenes:
            session.visited_scenes.append(scene.id)
        self.save(session)
        return True

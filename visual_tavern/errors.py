"""Named errors raised by the engine.

Every error carries the HTTP-equivalent status a caller should surface:

    NotFoundError      404  — session, event, NPC, scene, key event
    InvalidInputError  400  — bad history index, empty content, bad reference data
    UpstreamError      500  — LLM failures and unusable LLM output

Malformed narrative tags are never raised; the parser drops them.
"""

from __future__ import annotations


class EngineError(Exception):
    status_code = 500


# ---------------------------------------------------------------------------
# 404
# ---------------------------------------------------------------------------

class NotFoundError(EngineError):
    status_code = 404


class SessionNotFound(NotFoundError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class EventNotFound(NotFoundError):
    def __init__(self, event_id: str) -> None:
        super().__init__(f"Active event not found: {event_id}")
        self.event_id = event_id


class NpcNotFound(NotFoundError):
    def __init__(self, npc_id: str) -> None:
        super().__init__(f"NPC not found: {npc_id}")
        self.npc_id = npc_id


class SceneNotFound(NotFoundError):
    def __init__(self, scene_id: str) -> None:
        super().__init__(f"Scene not found: {scene_id}")
        self.scene_id = scene_id


class NoMoreKeyEvents(NotFoundError):
    def __init__(self, index: int, total: int) -> None:
        super().__init__(f"No more key events available (index {index} of {total})")
        self.index = index
        self.total = total


# ---------------------------------------------------------------------------
# 400
# ---------------------------------------------------------------------------

class InvalidInputError(EngineError):
    status_code = 400


class HistoryIndexError(InvalidInputError):
    """History index out of range, or not pointing at a user entry."""


class InvalidContentError(InvalidInputError):
    """Replacement content is empty or not a string."""


class NoHistoryError(InvalidInputError):
    """Nothing to regenerate from."""


class InvalidReferenceData(InvalidInputError):
    """World, NPC or scene settings are missing required sections."""


# ---------------------------------------------------------------------------
# 500
# ---------------------------------------------------------------------------

class UpstreamError(EngineError):
    status_code = 500


class LLMOutputError(UpstreamError):
    """The LLM answered, but not with anything we can use."""

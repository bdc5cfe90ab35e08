"""Visual-novel game service.

One player action, end to end:

  1. Take the session lock and load the session.
  2. Render the narrator prompt; the message window is the last
     ``history_window`` history entries plus the action.
  3. Stream the LLM answer through the incremental emitter, yielding
     raw_text / step envelopes as they become available.
  4. Once the stream finished: append user + assistant to the history,
     apply the last scene change, record the action, save. Only then is
     the complete envelope yielded.

A cancelled or failed stream commits nothing, so the history never holds a
partial assistant turn. Regenerate replays a user entry against the history
before it and swaps the tail only when the new answer completed.

Callers that stop iterating early should close the generator (``aclose()``
or ``contextlib.aclosing``) so the session lock is released promptly.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from pydantic import BaseModel, Field

from .config import EngineConfig
from .errors import InvalidContentError, LLMOutputError, SceneNotFound
from .llm import LLM, Messages
from .models import (
    ActionResult,
    CompleteEvent,
    EditResult,
    HistoryEntry,
    RawTextEvent,
    ReferenceData,
    RegenerateResult,
    SceneChange,
    SceneSummary,
    Session,
    Step,
    StreamEvent,
    WireModel,
)
from .parser import ParseContext, choice_options, parse_narrative
from .prompts import Prompts, narrator_context
from .storage import SessionStore
from .streaming import Parser, emit_steps

logger = logging.getLogger(__name__)


class VisualState(WireModel):
    session_id: str
    world_title: str
    player_name: str
    current_scene: SceneSummary
    visited_scenes: list[str]
    game_started: bool
    last_action: str | None = None
    total_messages: int


class _Turn(BaseModel):
    """What one streamed answer produced, filled in while it runs."""

    text: str = ""
    steps: list[Step] = Field(default_factory=list)
    usage: dict[str, Any] | None = None


class RegenerateStream:
    """Async iterator over the envelopes of a regenerate.

    ``regenerate_result`` is set as soon as the target entry is resolved,
    i.e. before the first envelope is yielded.
    """

    def __init__(self) -> None:
        self.regenerate_result: RegenerateResult | None = None
        self._events: AsyncIterator[StreamEvent] | None = None

    def __aiter__(self) -> "RegenerateStream":
        return self

    async def __anext__(self) -> StreamEvent:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        await self._events.aclose()


def scene_summary(session: Session) -> SceneSummary:
    scene = session.scene_by_id(session.current_scene)
    if scene is None:
        return SceneSummary(id=session.current_scene, name=session.current_scene)
    return SceneSummary(
        id=scene.id, name=scene.name, description=scene.description,
        danger_level=scene.danger_level, soundtrack=scene.soundtrack,
    )


class VisualGame:
    def __init__(
        self,
        *,
        store: SessionStore,
        llm: LLM,
        prompts: Prompts | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._store = store
        self._llm = llm
        self._prompts = prompts or Prompts()
        self._config = config or EngineConfig()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self, reference: ReferenceData | dict[str, Any], session_id: str | None = None
    ) -> Session:
        session_id = session_id or f"visual_{uuid.uuid4().hex[:12]}"
        return self._store.create(session_id, reference, mode="visual")

    def state(self, session_id: str) -> VisualState:
        session = self._store.load(session_id)
        return VisualState(
            session_id=session.session_id,
            world_title=session.world_setting.title,
            player_name=session.player_name,
            current_scene=scene_summary(session),
            visited_scenes=list(session.visited_scenes),
            game_started=session.game_started,
            last_action=session.last_action,
            total_messages=len(session.conversation_history),
        )

    def history(self, session_id: str) -> list[HistoryEntry]:
        return list(self._store.load(session_id).conversation_history)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def process_action(self, session_id: str, action: str) -> AsyncIterator[StreamEvent]:
        """Stream the answer to a player action as raw_text / step / complete envelopes."""
        return self._action_events(session_id, action, _Turn())

    async def run_action(self, session_id: str, action: str) -> ActionResult:
        """Non-streaming variant: consume the whole answer and summarise it."""
        turn = _Turn()
        async for _ in self._action_events(session_id, action, turn):
            pass
        return self._action_result(session_id, turn)

    async def _action_events(
        self, session_id: str, action: str, turn: _Turn
    ) -> AsyncIterator[StreamEvent]:
        if not isinstance(action, str) or not action.strip():
            raise InvalidContentError("Action must be a non-empty string")

        async with self._store.lock(session_id):
            session = self._store.load(session_id)
            content = action
            if not session.game_started and action.strip() == self._config.start_action:
                content = self._config.opening_request
                logger.info("Starting game for session %s", session_id)

            start = len(session.conversation_history)
            async for event in self._run(session, content, start, turn):
                yield event

    # ------------------------------------------------------------------
    # Regenerate / edit
    # ------------------------------------------------------------------

    def regenerate(self, session_id: str, index: int | None = None) -> RegenerateStream:
        """Replay the user entry at index (default: the last one) and stream the new answer."""
        stream = RegenerateStream()
        stream._events = self._regenerate_events(session_id, index, stream, _Turn())
        return stream

    async def run_regenerate(
        self, session_id: str, index: int | None = None
    ) -> tuple[RegenerateResult, ActionResult]:
        stream = RegenerateStream()
        turn = _Turn()
        stream._events = self._regenerate_events(session_id, index, stream, turn)
        async for _ in stream:
            pass
        return stream.regenerate_result, self._action_result(session_id, turn)

    async def _regenerate_events(
        self,
        session_id: str,
        index: int | None,
        stream: RegenerateStream,
        turn: _Turn,
    ) -> AsyncIterator[StreamEvent]:
        async with self._store.lock(session_id):
            session = self._store.load(session_id)
            target = self._store.regenerate_target(session, index)
            content = session.conversation_history[target].content
            stream.regenerate_result = RegenerateResult(
                regenerated_from=target,
                truncated_messages=len(session.conversation_history) - target,
            )
            logger.info(
                "Regenerating session %s from history index %d (%d entries replaced)",
                session_id, target, stream.regenerate_result.truncated_messages,
            )
            async for event in self._run(session, content, target, turn):
                yield event

    async def edit_history(self, session_id: str, index: int, content: Any) -> EditResult:
        async with self._store.lock(session_id):
            session = self._store.load(session_id)
            return self._store.edit(session, index, content)

    async def move_to_scene(self, session_id: str, scene_id: str) -> SceneSummary:
        """Switch scenes directly, without an LLM turn."""
        async with self._store.lock(session_id):
            session = self._store.load(session_id)
            if session.scene_by_id(scene_id) is None:
                raise SceneNotFound(scene_id)
            self._store.apply_scene_change(session, SceneChange(scene_id=scene_id))
            return scene_summary(session)

    # ------------------------------------------------------------------
    # Internals (caller holds the session lock)
    # ------------------------------------------------------------------

    def _parser(self, session: Session) -> Parser:
        context = ParseContext.for_session(session)
        return lambda text: parse_narrative(text, context)

    def _window(self, prior: list[HistoryEntry], content: str) -> Messages:
        size = self._config.history_window
        window = prior[-size:] if size else []
        # Chat backends expect the conversation to open with a user turn.
        while window and window[0].role == "assistant":
            window = window[1:]
        messages = [{"role": e.role, "content": e.content} for e in window]
        messages.append({"role": "user", "content": content})
        return messages

    async def _run(
        self, session: Session, content: str, start: int, turn: _Turn
    ) -> AsyncIterator[StreamEvent]:
        """Stream one answer for content against history[:start] and commit it on success."""
        system = self._prompts.render("narrator", narrator_context(session, content))
        messages = self._window(session.conversation_history[:start], content)

        async def tokens() -> AsyncIterator[str]:
            async for chunk in self._llm.stream("narrator", system, messages):
                if chunk.usage:
                    turn.usage = chunk.usage
                if chunk.text:
                    yield chunk.text

        async with aclosing(emit_steps(tokens(), self._parser(session))) as events:
            async for event in events:
                if isinstance(event, RawTextEvent):
                    turn.text += event.text
                elif isinstance(event, CompleteEvent):
                    if not turn.text.strip():
                        raise LLMOutputError("LLM returned an empty response")
                    turn.steps = list(event.all_steps)
                    self._commit(session, content, start, turn)
                yield event

    def _commit(self, session: Session, content: str, start: int, turn: _Turn) -> None:
        session.game_started = True
        session.last_action = content
        self._store.replace_tail(session, start, [
            HistoryEntry(role="user", content=content),
            HistoryEntry(role="assistant", content=turn.text),
        ])
        scene_changes = [s for s in turn.steps if isinstance(s, SceneChange)]
        if scene_changes:
            self._store.apply_scene_change(session, scene_changes[-1])
        logger.info(
            "Committed exchange for session %s: %d steps, %d history entries",
            session.session_id, len(turn.steps), len(session.conversation_history),
        )

    def _action_result(self, session_id: str, turn: _Turn) -> ActionResult:
        session = self._store.load(session_id)
        options = [o.text for o in choice_options(turn.steps)]
        return ActionResult(
            response=turn.text,
            steps=turn.steps,
            action_options=options or list(self._config.default_action_options),
            current_scene=scene_summary(session),
            usage=turn.usage,
        )

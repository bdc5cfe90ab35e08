"""Narrative tag parsing into typed presentation steps.

LLM output format, one directive per line:

    [NARRATION: text]
    [SCENE_CHANGE: scene_id]
    [DIALOGUE: speaker_id, "text"]        speaker_id "player" = the player
    [TRANSITION: text]
    [CHOICE: title]
    description line(s)
    [OPTION: text]
    [END_CHOICE]

Plain lines continue the open step (a Choice's description, otherwise the
step's content). The parser never raises on malformed input: a dialogue line
that fails the id/quote pattern, a stray OPTION or END_CHOICE and an
unclosed CHOICE at end of input are all dropped.

The parser is a pure function of its input, so re-parsing a longer prefix of
the same stream yields the same leading steps; the incremental emitter relies
on that.
"""

from __future__ import annotations

import enum
import logging
import re

from pydantic import BaseModel, Field

from .models import (
    Choice,
    Dialogue,
    NarrativeResult,
    Narration,
    Npc,
    Option,
    ReferenceData,
    Scene,
    SceneChange,
    Step,
    Transition,
)
from .variants import resolve_variant_image

logger = logging.getLogger(__name__)

PLAYER_SPEAKER_ID = "player"

_TAG_RE = re.compile(r"^\[([A-Z_]+):")
_DIALOGUE_RE = re.compile(r'^\[DIALOGUE:\s*([^,]+),\s*"([^"]+)"\s*\]')

_STEP_TAGS = ("NARRATION", "SCENE_CHANGE", "DIALOGUE", "TRANSITION", "CHOICE")


class ParseContext(BaseModel):
    """Registries used to enrich dialogue and scene-change steps."""

    npcs: dict[str, Npc] = Field(default_factory=dict)
    scenes: dict[str, Scene] = Field(default_factory=dict)
    player_name: str | None = None

    @classmethod
    def for_session(cls, reference: ReferenceData) -> "ParseContext":
        return cls(
            npcs={n.id: n for n in reference.npc_setting.npcs},
            scenes={s.id: s for s in reference.scene_setting.scenes},
            player_name=reference.player_name,
        )


class _State(enum.Enum):
    IDLE = "idle"
    STEP = "step"
    CHOICE = "choice"


def _tag_body(line: str, tag: str) -> str:
    body = line[len(tag) + 2:]
    if body.endswith("]"):
        body = body[:-1]
    return body.strip()


def _join(existing: str, line: str) -> str:
    return f"{existing} {line}" if existing else line


class _Scanner:
    def __init__(self, context: ParseContext | None) -> None:
        self._context = context
        self._state = _State.IDLE
        self._open: Step | None = None
        self.steps: list[Step] = []

    # ── transitions ───────────────────────────────────────

    def feed(self, raw_line: str) -> None:
        line = raw_line.strip()
        if not line:
            return

        if not line.startswith("["):
            self._continue(line)
            return

        if line == "[END_CHOICE]":
            if self._state is _State.CHOICE:
                self._emit()
            return

        match = _TAG_RE.match(line)
        if not match:
            return
        tag = match.group(1)

        if tag == "OPTION":
            if self._state is _State.CHOICE:
                options = self._open.options
                options.append(Option(id=f"option_{len(options) + 1}", text=_tag_body(line, tag)))
            return

        if tag in _STEP_TAGS:
            self._close()
            step = self._build(tag, line)
            if step is not None:
                self._open = step
                self._state = _State.CHOICE if tag == "CHOICE" else _State.STEP

    def finish(self) -> list[Step]:
        if self._state is _State.STEP:
            self._emit()
        elif self._state is _State.CHOICE:
            logger.debug("Dropping unclosed choice %r", self._open.title)
            self._reset()
        return self.steps

    # ── helpers ───────────────────────────────────────────

    def _continue(self, line: str) -> None:
        if self._state is _State.CHOICE:
            self._open.description = _join(self._open.description, line)
        elif self._state is _State.STEP and not isinstance(self._open, SceneChange):
            self._open.content = _join(self._open.content, line)

    def _close(self) -> None:
        if self._state is _State.STEP:
            self._emit()
        elif self._state is _State.CHOICE:
            # A new step tag before END_CHOICE abandons the choice.
            logger.debug("Dropping choice %r interrupted by a new tag", self._open.title)
            self._reset()

    def _emit(self) -> None:
        self.steps.append(self._open)
        self._reset()

    def _reset(self) -> None:
        self._open = None
        self._state = _State.IDLE

    def _build(self, tag: str, line: str) -> Step | None:
        if tag == "NARRATION":
            return Narration(content=_tag_body(line, tag))
        if tag == "TRANSITION":
            return Transition(content=_tag_body(line, tag))
        if tag == "CHOICE":
            return Choice(title=_tag_body(line, tag))
        if tag == "SCENE_CHANGE":
            return self._scene_change(_tag_body(line, tag))
        return self._dialogue(line)

    def _scene_change(self, scene_id: str) -> SceneChange:
        step = SceneChange(scene_id=scene_id)
        if self._context is not None:
            scene = self._context.scenes.get(scene_id)
            if scene is not None:
                step.scene_meta = scene.meta()
        return step

    def _dialogue(self, line: str) -> Dialogue | None:
        match = _DIALOGUE_RE.match(line)
        if not match:
            logger.debug("Skipping malformed dialogue line: %r", line)
            return None
        speaker_id = match.group(1).strip()
        content = match.group(2).strip()

        if speaker_id == PLAYER_SPEAKER_ID:
            name = self._context.player_name if self._context else None
            return Dialogue(
                speaker_id=speaker_id, content=content, is_player=True,
                speaker_name=name or speaker_id,
            )

        npc = self._context.npcs.get(speaker_id) if self._context else None
        if npc is None:
            return Dialogue(speaker_id=speaker_id, content=content, speaker_name=speaker_id)
        return Dialogue(
            speaker_id=speaker_id,
            content=content,
            speaker_name=npc.name,
            images=dict(npc.images),
            active_image_ref=resolve_variant_image(content, npc.images),
        )


def parse_narrative(text: str, context: ParseContext | None = None) -> NarrativeResult:
    """Parse tagged LLM output into an ordered list of steps."""
    scanner = _Scanner(context)
    for line in text.split("\n"):
        scanner.feed(line)
    steps = scanner.finish()
    return NarrativeResult(steps=steps, total_steps=len(steps))


def choice_options(steps: list[Step]) -> list[Option]:
    """Options of the first Choice step, or [] if there is none."""
    for step in steps:
        if isinstance(step, Choice):
            return list(step.options)
    return []

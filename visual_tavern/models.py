"""Core domain models.

Parser, emitter, store and services all operate on these types.
Pydantic is used for validation and serialisation at every data boundary.
Every model serialises with camelCase keys (``model_dump(by_alias=True)``)
and accepts either camelCase or snake_case on input.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class OpenModel(WireModel):
    """Reference data written by humans or LLMs: unknown keys are preserved."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )


# ---------------------------------------------------------------------------
# Steps: the parser's output unit
# ---------------------------------------------------------------------------

class Option(WireModel):
    id: str
    text: str


class SceneMeta(WireModel):
    name: str
    description: str = ""
    image: Any = None
    atmosphere: Any = None
    danger_level: Any = None
    soundtrack: Any = None


class Narration(WireModel):
    type: Literal["narration"] = "narration"
    content: str = ""


class Dialogue(WireModel):
    type: Literal["dialogue"] = "dialogue"
    speaker_id: str
    content: str = ""
    is_player: bool = False
    speaker_name: str | None = None
    images: dict[str, str] | None = None
    active_image_ref: str | None = None


class SceneChange(WireModel):
    type: Literal["scene_change"] = "scene_change"
    scene_id: str
    scene_meta: SceneMeta | None = None


class Transition(WireModel):
    type: Literal["transition"] = "transition"
    content: str = ""


class Choice(WireModel):
    type: Literal["choice"] = "choice"
    title: str
    description: str = ""
    options: list[Option] = Field(default_factory=list)


Step = Annotated[
    Union[Narration, Dialogue, SceneChange, Transition, Choice],
    Field(discriminator="type"),
]


class NarrativeResult(WireModel):
    steps: list[Step] = Field(default_factory=list)
    total_steps: int = 0


# ---------------------------------------------------------------------------
# Reference data: world / NPC / scene settings
# ---------------------------------------------------------------------------

class PlayerInfo(OpenModel):
    name: str = "player"


class KeyEvent(OpenModel):
    title: str = ""
    description: str = ""


class WorldSetting(OpenModel):
    title: str
    player: PlayerInfo = Field(
        default_factory=PlayerInfo,
        validation_alias=AliasChoices("player", "Player"),
    )
    key_events: list[KeyEvent] = Field(default_factory=list)


class Npc(OpenModel):
    id: str
    name: str
    images: dict[str, str] = Field(default_factory=dict)

    @field_validator("images", mode="before")
    @classmethod
    def _null_images(cls, v: Any) -> Any:
        return v or {}


class Subscene(OpenModel):
    id: str
    name: str = ""
    npcs: list[str] = Field(default_factory=list)


class LocatedSubscene(Subscene):
    """A subscene annotated with the scene that contains it."""

    parent_scene_id: str
    parent_scene_name: str


class Scene(OpenModel):
    id: str
    name: str
    description: str = ""
    image: Any = None
    images: Any = None
    atmosphere: Any = None
    danger_level: Any = None
    soundtrack: Any = None
    subscenes: list[Subscene] = Field(default_factory=list)

    def meta(self) -> SceneMeta:
        return SceneMeta(
            name=self.name,
            description=self.description,
            image=self.image or self.images,
            atmosphere=self.atmosphere,
            danger_level=self.danger_level,
            soundtrack=self.soundtrack,
        )


class NpcSetting(OpenModel):
    npcs: list[Npc] = Field(default_factory=list)


class SceneSetting(OpenModel):
    scenes: list[Scene] = Field(min_length=1)


class ReferenceData(WireModel):
    """The three settings a session is created from. Read-only during play."""

    world_setting: WorldSetting
    npc_setting: NpcSetting
    scene_setting: SceneSetting

    def npc_by_id(self, npc_id: str) -> Npc | None:
        for npc in self.npc_setting.npcs:
            if npc.id == npc_id:
                return npc
        return None

    def scene_by_id(self, scene_id: str) -> Scene | None:
        for scene in self.scene_setting.scenes:
            if scene.id == scene_id:
                return scene
        return None

    def all_subscenes(self) -> list[LocatedSubscene]:
        return [
            LocatedSubscene(
                **sub.model_dump(),
                parent_scene_id=scene.id,
                parent_scene_name=scene.name,
            )
            for scene in self.scene_setting.scenes
            for sub in scene.subscenes
        ]

    def subscene_by_id(self, subscene_id: str | None) -> LocatedSubscene | None:
        for sub in self.all_subscenes():
            if sub.id == subscene_id:
                return sub
        return None

    def key_event(self, index: int) -> KeyEvent | None:
        events = self.world_setting.key_events
        if 0 <= index < len(events):
            return events[index]
        return None

    @property
    def player_name(self) -> str:
        return self.world_setting.player.name


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class HistoryEntry(WireModel):
    role: Literal["user", "assistant"]
    content: str


class Session(ReferenceData):
    session_id: str
    mode: Literal["visual", "world_interaction"] = "visual"
    current_scene: str
    visited_scenes: list[str] = Field(default_factory=list)
    conversation_history: list[HistoryEntry] = Field(default_factory=list)
    game_started: bool = False
    last_action: str | None = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)

    def reference(self) -> ReferenceData:
        return ReferenceData(
            world_setting=self.world_setting,
            npc_setting=self.npc_setting,
            scene_setting=self.scene_setting,
        )


class Interaction(WireModel):
    narrative_steps: list[Step] = Field(default_factory=list)
    options: list[Option] = Field(default_factory=list)
    timestamp: str = Field(default_factory=now_iso)


class OptionResponse(WireModel):
    selected_option: Option
    narrative_steps: list[Step] = Field(default_factory=list)
    timestamp: str = Field(default_factory=now_iso)


class Event(OpenModel):
    event_id: str
    target_npc_id: str
    target_subscene_id: str | None = None
    status: Literal["active", "completed"] = "active"
    round: int
    created_at: str = Field(default_factory=now_iso)
    completed_at: str | None = None
    event_title: str = ""
    event_description: str = ""
    event_type: str = ""
    related_key_event_index: int | None = None
    npc_selection_reason: str = ""
    last_interaction: Interaction | None = None
    selected_option: str | None = None
    option_response: OptionResponse | None = None


class InteractionRecord(WireModel):
    """One entry of the world-interaction chat log."""

    type: Literal["npc_dialogue", "player_choice"]
    event_id: str
    event_title: str = ""
    npc_id: str
    npc_name: str
    subscene_id: str | None = None
    subscene_name: str | None = None
    round: int
    narrative_steps: list[Step] = Field(default_factory=list)
    selected_option: Option | None = None
    timestamp: str = Field(default_factory=now_iso)


class WorldSession(Session):
    mode: Literal["world_interaction"] = "world_interaction"
    current_round: int = 1
    current_key_event_index: int = 0
    completed_key_events: list[int] = Field(default_factory=list)
    active_events: list[Event] = Field(default_factory=list)
    event_history: list[Event] = Field(default_factory=list)
    interaction_history: list[InteractionRecord] = Field(default_factory=list)

    @property
    def total_key_events(self) -> int:
        return len(self.world_setting.key_events)


def session_from_dict(data: dict[str, Any]) -> Session:
    """Rebuild the right session class from persisted data."""
    if data.get("mode") == "world_interaction":
        return WorldSession.model_validate(data)
    return Session.model_validate(data)


# ---------------------------------------------------------------------------
# Decision collaborator outputs
# ---------------------------------------------------------------------------

class NpcSelection(WireModel):
    npc_id: str = Field(validation_alias=AliasChoices("selectedNpcId", "npcId", "npc_id"))
    reason: str = ""


class EventDraft(OpenModel):
    event_title: str = ""
    event_description: str = ""
    event_type: str = ""
    target_subscene_id: str | None = None
    related_key_event_index: int | None = None


class ChainDecision(WireModel):
    should_generate_new: bool = False
    key_event_completed: bool = False
    reason: str | None = None
    next_event_suggestion: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Stream envelopes
# ---------------------------------------------------------------------------

class RawTextEvent(WireModel):
    type: Literal["raw_text"] = "raw_text"
    text: str
    chunk_index: int


class StepEvent(WireModel):
    type: Literal["step"] = "step"
    step_index: int
    step: Step
    is_incremental: bool


class CompleteEvent(WireModel):
    type: Literal["complete"] = "complete"
    total_steps: int
    all_steps: list[Step]


StreamEvent = Union[RawTextEvent, StepEvent, CompleteEvent]


# ---------------------------------------------------------------------------
# Service results
# ---------------------------------------------------------------------------

class EditResult(WireModel):
    edited_index: int
    deleted_count: int
    previous_content: str
    total_messages: int


class RegenerateResult(WireModel):
    regenerated_from: int
    truncated_messages: int


class SceneSummary(WireModel):
    id: str
    name: str
    description: str = ""
    danger_level: Any = None
    soundtrack: Any = None


class ActionResult(WireModel):
    response: str
    steps: list[Step]
    action_options: list[str]
    current_scene: SceneSummary
    usage: dict[str, Any] | None = None

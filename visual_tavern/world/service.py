"""World-interaction game service.

Round-based play: each key event of the world is worked towards through
smaller events, each handed out by one NPC in one subscene. The player talks
to the NPC (interact), may preview the reaction to an option
(option_response) and finally commits to one (select_option), which resolves
the event and asks the director whether the key event is complete and
whether a follow-up event should be generated.

Every public method takes the session lock for its whole duration. The
private helpers below assume the caller holds it.
"""

from __future__ import annotations

import logging
import random
import uuid
from typing import Any

from pydantic.alias_generators import to_camel

from ..config import EngineConfig
from ..errors import EngineError, InvalidInputError, InvalidReferenceData, NpcNotFound
from ..llm import LLM
from ..models import (
    ChainDecision,
    Event,
    Interaction,
    InteractionRecord,
    KeyEvent,
    LocatedSubscene,
    Npc,
    Option,
    OptionResponse,
    ReferenceData,
    Step,
    WireModel,
    WorldSession,
)
from ..parser import ParseContext, choice_options, parse_narrative
from ..prompts import PromptError, Prompts, world_context
from ..storage import SessionStore
from . import events
from .director import Director, RuleDirector

logger = logging.getLogger(__name__)

# Draft keys the engine owns; a model answer must not override them.
_EVENT_KEYS = {name for name in Event.model_fields} | {to_camel(name) for name in Event.model_fields}


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------

class NpcBrief(WireModel):
    id: str
    name: str
    image: str | None = None

    @classmethod
    def of(cls, npc: Npc) -> "NpcBrief":
        return cls(id=npc.id, name=npc.name, image=npc.images.get("base"))


class GeneratedEvent(WireModel):
    event: Event
    npc: NpcBrief
    subscene: LocatedSubscene | None = None
    npc_selection_reason: str = ""


class InteractionResult(WireModel):
    event_id: str
    event_title: str
    npc: NpcBrief
    subscene: LocatedSubscene | None = None
    narrative_steps: list[Step]
    options: list[Option]
    total_steps: int


class OptionResult(WireModel):
    event_id: str
    selected_option: Option
    narrative_steps: list[Step]
    total_steps: int
    npc: NpcBrief


class SelectionResult(WireModel):
    completed_event: Event
    new_event: GeneratedEvent | None = None
    key_event_completed: bool = False
    decision: ChainDecision | None = None


class ActiveEventInfo(Event):
    npc: NpcBrief | None = None
    subscene: LocatedSubscene | None = None


class WorldState(WireModel):
    session_id: str
    current_round: int
    current_key_event: KeyEvent | None = None
    current_key_event_index: int
    completed_key_events: list[int]
    total_key_events: int
    all_key_events_completed: bool
    active_events: list[Event]
    total_events: int
    event_history: list[Event]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class WorldInteraction:
    def __init__(
        self,
        *,
        store: SessionStore,
        llm: LLM,
        director: Director | None = None,
        prompts: Prompts | None = None,
        config: EngineConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._llm = llm
        self._config = config or EngineConfig()
        self._director = director or RuleDirector(self._config.rule_events_per_key_event)
        self._prompts = prompts or Prompts()
        self._rng = rng or random.Random()

    def create_session(
        self, reference: ReferenceData | dict[str, Any], session_id: str | None = None
    ) -> WorldSession:
        session_id = session_id or f"world_{uuid.uuid4().hex[:12]}"
        return self._store.create(session_id, reference, mode="world_interaction")

    def _load(self, session_id: str) -> WorldSession:
        """Load a world session.

        A missing id raises SessionNotFound (404). An existing visual session
        raises InvalidInputError (400): the id is valid, the request is not.
        """
        session = self._store.load(session_id)
        if not isinstance(session, WorldSession):
            raise InvalidInputError(f"Session {session_id} is not a world interaction session")
        return session

    # ------------------------------------------------------------------
    # Event generation
    # ------------------------------------------------------------------

    async def generate_event(self, session_id: str) -> GeneratedEvent:
        """Pick an NPC, draft an event for the current key event and hand it out."""
        async with self._store.lock(session_id):
            session = self._load(session_id)
            return await self._generate(session)

    async def _generate(self, session: WorldSession) -> GeneratedEvent:
        key_event = events.current_key_event(session)
        npcs = session.npc_setting.npcs
        if not npcs:
            raise InvalidReferenceData("World has no NPCs to hand out events")

        npc, reason = await self._select_npc(session, key_event)
        draft = await self._director.draft_event(session, key_event, npc)

        subscene = session.subscene_by_id(draft.target_subscene_id)
        if subscene is None:
            candidates = session.all_subscenes()
            subscene = candidates[0] if candidates else None
            if draft.target_subscene_id:
                logger.warning(
                    "Unknown subscene %r in event draft, using %s",
                    draft.target_subscene_id, subscene.id if subscene else None,
                )

        related = draft.related_key_event_index
        extra = {k: v for k, v in (draft.model_extra or {}).items() if k not in _EVENT_KEYS}
        event = Event.model_validate({
            **extra,
            "event_id": str(uuid.uuid4()),
            "target_npc_id": npc.id,
            "target_subscene_id": subscene.id if subscene else None,
            "status": "active",
            "round": session.current_round,
            "event_title": draft.event_title,
            "event_description": draft.event_description,
            "event_type": draft.event_type,
            "related_key_event_index": session.current_key_event_index if related is None else related,
            "npc_selection_reason": reason,
        })
        events.add_event(session, event)
        if subscene is not None:
            self._place_npc(session, subscene.id, npc.id)
        self._store.save(session)

        logger.info("Event %r handed to %s in %s", event.event_title, npc.id, event.target_subscene_id)
        return GeneratedEvent(
            event=event, npc=NpcBrief.of(npc), subscene=session.subscene_by_id(event.target_subscene_id),
            npc_selection_reason=reason,
        )

    async def _select_npc(self, session: WorldSession, key_event: KeyEvent) -> tuple[Npc, str]:
        try:
            selection = await self._director.select_npc(session, key_event)
        except (EngineError, PromptError) as e:
            logger.warning("NPC selection failed, falling back to random: %s", e)
            selection = None

        npc = session.npc_by_id(selection.npc_id) if selection else None
        if npc is not None:
            return npc, selection.reason
        if selection is not None:
            logger.warning("Selected NPC %r does not exist, falling back to random", selection.npc_id)
        return self._rng.choice(session.npc_setting.npcs), "Random fallback"

    def _place_npc(self, session: WorldSession, subscene_id: str, npc_id: str) -> None:
        for scene in session.scene_setting.scenes:
            for sub in scene.subscenes:
                if sub.id == subscene_id and npc_id not in sub.npcs:
                    sub.npcs.append(npc_id)

    # ------------------------------------------------------------------
    # Talking to the event NPC
    # ------------------------------------------------------------------

    def _event_parties(self, session: WorldSession, event_id: str) -> tuple[Event, Npc, LocatedSubscene | None]:
        event = events.find_active_event(session, event_id)
        npc = session.npc_by_id(event.target_npc_id)
        if npc is None:
            raise NpcNotFound(event.target_npc_id)
        return event, npc, session.subscene_by_id(event.target_subscene_id)

    async def _narrate(self, role: str, session: WorldSession, **kwargs: Any) -> list[Step]:
        ctx = world_context(session, **kwargs)
        system = self._prompts.render(role, ctx)
        user = self._prompts.render(f"{role}_user", ctx)
        text = await self._llm(role, system, [{"role": "user", "content": user}])
        return parse_narrative(text, ParseContext.for_session(session)).steps

    def _find_option(self, event: Event, option_id: str) -> Option:
        if event.last_interaction is not None:
            for option in event.last_interaction.options:
                if option.id == option_id:
                    return option
        return Option(id=option_id, text=option_id)

    async def interact(self, session_id: str, event_id: str) -> InteractionResult:
        """Play out the encounter with the event NPC and store the offered options."""
        async with self._store.lock(session_id):
            session = self._load(session_id)
            event, npc, subscene = self._event_parties(session, event_id)

            steps = await self._narrate("npc_interaction", session, npc=npc, event=event, subscene=subscene)
            options = choice_options(steps)

            event.last_interaction = Interaction(narrative_steps=steps, options=options)
            session.interaction_history.append(InteractionRecord(
                type="npc_dialogue",
                event_id=event.event_id,
                event_title=event.event_title,
                npc_id=npc.id,
                npc_name=npc.name,
                subscene_id=subscene.id if subscene else None,
                subscene_name=subscene.name if subscene else None,
                round=session.current_round,
                narrative_steps=steps,
            ))
            self._store.save(session)

            return InteractionResult(
                event_id=event.event_id, event_title=event.event_title,
                npc=NpcBrief.of(npc), subscene=subscene,
                narrative_steps=steps, options=options, total_steps=len(steps),
            )

    async def option_response(self, session_id: str, event_id: str, option_id: str) -> OptionResult:
        """The NPC's reaction to an option, without resolving the event."""
        async with self._store.lock(session_id):
            session = self._load(session_id)
            event, npc, subscene = self._event_parties(session, event_id)
            option = self._find_option(event, option_id)

            steps = await self._narrate(
                "option_response", session, npc=npc, event=event, subscene=subscene, option=option,
            )
            event.option_response = OptionResponse(selected_option=option, narrative_steps=steps)
            self._store.save(session)

            return OptionResult(
                event_id=event.event_id, selected_option=option,
                narrative_steps=steps, total_steps=len(steps), npc=NpcBrief.of(npc),
            )

    async def select_option(self, session_id: str, event_id: str, option_id: str) -> SelectionResult:
        """Commit to an option: resolve the event, then let the director decide what follows."""
        async with self._store.lock(session_id):
            session = self._load(session_id)
            event, npc, subscene = self._event_parties(session, event_id)
            option = self._find_option(event, option_id)

            steps = await self._narrate(
                "option_response", session, npc=npc, event=event, subscene=subscene, option=option,
            )
            event.selected_option = option.id
            event.option_response = OptionResponse(selected_option=option, narrative_steps=steps)
            session.interaction_history.append(InteractionRecord(
                type="player_choice",
                event_id=event.event_id,
                event_title=event.event_title,
                npc_id=npc.id,
                npc_name=npc.name,
                subscene_id=subscene.id if subscene else None,
                subscene_name=subscene.name if subscene else None,
                round=session.current_round,
                narrative_steps=steps,
                selected_option=option,
            ))
            completed = events.terminate_event(session, event_id)

            try:
                decision = await self._director.decide_chain(session, completed, option)
            except (EngineError, PromptError) as e:
                logger.warning("Event chain decision failed, continuing without one: %s", e)
                decision = ChainDecision()

            if decision.key_event_completed:
                events.complete_current_key_event(session)
            self._store.save(session)

            new_event = None
            if decision.should_generate_new and not decision.key_event_completed:
                try:
                    new_event = await self._generate(session)
                except (EngineError, PromptError) as e:
                    logger.warning("Follow-up event generation failed: %s", e)

            return SelectionResult(
                completed_event=completed,
                new_event=new_event,
                key_event_completed=decision.key_event_completed,
                decision=decision,
            )

    # ------------------------------------------------------------------
    # Rounds and state
    # ------------------------------------------------------------------

    async def start_new_round(self, session_id: str) -> WorldState:
        """Advance round and key event, then try to hand out an event for it.

        The round starts even when generation fails; it then has no active events.
        """
        async with self._store.lock(session_id):
            session = self._load(session_id)
            events.begin_new_round(session)
            self._store.save(session)

            if session.current_key_event_index < session.total_key_events:
                try:
                    await self._generate(session)
                except (EngineError, PromptError) as e:
                    logger.warning("Event generation for round %d failed: %s", session.current_round, e)
            else:
                logger.info("No key events left for round %d", session.current_round)
            return self._state(session)

    def active_events(self, session_id: str) -> list[ActiveEventInfo]:
        session = self._load(session_id)
        infos = []
        for event in session.active_events:
            npc = session.npc_by_id(event.target_npc_id)
            infos.append(ActiveEventInfo.model_validate({
                **event.model_dump(),
                "npc": NpcBrief.of(npc) if npc else None,
                "subscene": session.subscene_by_id(event.target_subscene_id),
            }))
        return infos

    def state(self, session_id: str) -> WorldState:
        return self._state(self._load(session_id))

    def _state(self, session: WorldSession) -> WorldState:
        return WorldState(
            session_id=session.session_id,
            current_round=session.current_round,
            current_key_event=session.key_event(session.current_key_event_index),
            current_key_event_index=session.current_key_event_index,
            completed_key_events=list(session.completed_key_events),
            total_key_events=session.total_key_events,
            all_key_events_completed=events.all_key_events_completed(session),
            active_events=list(session.active_events),
            total_events=len(session.event_history),
            event_history=session.event_history[-10:],
        )

"""Decision collaborators for the world-interaction mode.

A Director answers the three questions the round/event state machine cannot
answer on its own:

    select_npc    which NPC hands out the next event
    draft_event   what that event is and where it takes place
    decide_chain  after an event resolved: is the key event complete, and
                  should another event be generated

LLMDirector asks the model (one-shot prompt, JSON answer). RuleDirector is
deterministic and needs no model, which makes it the default for offline play
and for tests.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from ..errors import LLMOutputError
from ..json_output import parse_json_output
from ..llm import LLM
from ..models import (
    ChainDecision,
    Event,
    EventDraft,
    KeyEvent,
    Npc,
    NpcSelection,
    Option,
    WorldSession,
)
from ..prompts import Prompts, world_context

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class Director(Protocol):
    async def select_npc(self, session: WorldSession, key_event: KeyEvent) -> NpcSelection: ...

    async def draft_event(self, session: WorldSession, key_event: KeyEvent, npc: Npc) -> EventDraft: ...

    async def decide_chain(self, session: WorldSession, event: Event, option: Option) -> ChainDecision: ...


# ---------------------------------------------------------------------------
# LLMDirector
# ---------------------------------------------------------------------------

class LLMDirector:
    def __init__(self, llm: LLM, prompts: Prompts | None = None) -> None:
        self._llm = llm
        self._prompts = prompts or Prompts()

    async def _ask(self, role: str, model: type[M], session: WorldSession, **kwargs: Any) -> M:
        ctx = world_context(session, **kwargs)
        system = self._prompts.render(role, ctx)
        user = self._prompts.render(f"{role}_user", ctx)
        text = await self._llm(role, system, [{"role": "user", "content": user}])
        data = parse_json_output(text)
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise LLMOutputError(f"Invalid {role} answer: {e}") from e

    async def select_npc(self, session: WorldSession, key_event: KeyEvent) -> NpcSelection:
        selection = await self._ask("npc_selection", NpcSelection, session)
        logger.info("LLM selected NPC %s: %s", selection.npc_id, selection.reason)
        return selection

    async def draft_event(self, session: WorldSession, key_event: KeyEvent, npc: Npc) -> EventDraft:
        return await self._ask("event_generation", EventDraft, session, npc=npc)

    async def decide_chain(self, session: WorldSession, event: Event, option: Option) -> ChainDecision:
        npc = session.npc_by_id(event.target_npc_id)
        decision = await self._ask("event_chain", ChainDecision, session, event=event, option=option, npc=npc)
        logger.info(
            "Event chain decision: new=%s completed=%s (%s)",
            decision.should_generate_new, decision.key_event_completed, decision.reason,
        )
        return decision


# ---------------------------------------------------------------------------
# RuleDirector
# ---------------------------------------------------------------------------

class RuleDirector:
    """Round-robin NPCs; a key event completes after a fixed number of resolved events.

    Args:
        events_per_key_event: Completed events tied to the current key event
                              after which it counts as complete.
    """

    def __init__(self, events_per_key_event: int = 3) -> None:
        self._events_per_key_event = events_per_key_event

    async def select_npc(self, session: WorldSession, key_event: KeyEvent) -> NpcSelection:
        npcs = session.npc_setting.npcs
        npc = npcs[len(session.event_history) % len(npcs)]
        return NpcSelection(npc_id=npc.id, reason="round-robin")

    async def draft_event(self, session: WorldSession, key_event: KeyEvent, npc: Npc) -> EventDraft:
        home = next((s for s in session.all_subscenes() if npc.id in s.npcs), None)
        return EventDraft(
            event_title=f"{npc.name}: {key_event.title}",
            event_description=key_event.description,
            event_type="key_event",
            target_subscene_id=home.id if home else None,
            related_key_event_index=session.current_key_event_index,
        )

    async def decide_chain(self, session: WorldSession, event: Event, option: Option) -> ChainDecision:
        index = session.current_key_event_index
        resolved = sum(
            1 for e in session.event_history
            if e.status == "completed" and e.related_key_event_index == index
        )
        if resolved >= self._events_per_key_event:
            return ChainDecision(
                key_event_completed=True,
                reason=f"{resolved} events resolved for key event {index}",
            )
        return ChainDecision(
            should_generate_new=True,
            reason=f"{resolved}/{self._events_per_key_event} events resolved for key event {index}",
        )

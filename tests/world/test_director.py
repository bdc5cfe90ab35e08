"""Tests for the decision collaborators: LLMDirector and RuleDirector."""

import pytest

from visual_tavern.errors import LLMOutputError
from visual_tavern.models import Event, Option, WorldSession, session_from_dict
from visual_tavern.world.director import LLMDirector, RuleDirector
from visual_tavern.world.events import add_event, current_key_event, terminate_event


@pytest.fixture
def session(reference_data) -> WorldSession:
    return session_from_dict({
        **reference_data,
        "sessionId": "world_director",
        "mode": "world_interaction",
        "currentScene": "harbor",
    })


def _resolved(session, event_id, related=0):
    add_event(session, Event(event_id=event_id, target_npc_id="mira", round=1,
                             related_key_event_index=related))
    return terminate_event(session, event_id)


# ── LLMDirector ──────────────────────────────────────────────


class TestLLMDirector:
    async def test_select_npc(self, session, stub_llm):
        llm = stub_llm(npc_selection=['```json\n{"selectedNpcId": "old_tom", "reason": "he kept the lamp"}\n```'])
        director = LLMDirector(llm)

        selection = await director.select_npc(session, current_key_event(session))

        assert selection.npc_id == "old_tom"
        assert selection.reason == "he kept the lamp"
        stage, system, messages = llm.calls[0]
        assert stage == "npc_selection"
        assert "Lanterns over Saltmere" in system
        assert "The Dark Lighthouse" in messages[0]["content"]
        assert "- kestrel: Kestrel" in messages[0]["content"]

    async def test_select_npc_without_json(self, session, stub_llm):
        director = LLMDirector(stub_llm(npc_selection=["Mira, obviously."]))
        with pytest.raises(LLMOutputError):
            await director.select_npc(session, current_key_event(session))

    async def test_select_npc_missing_id(self, session, stub_llm):
        director = LLMDirector(stub_llm(npc_selection=['{"reason": "undecided"}']))
        with pytest.raises(LLMOutputError, match="Invalid npc_selection answer"):
            await director.select_npc(session, current_key_event(session))

    async def test_draft_event(self, session, stub_llm):
        llm = stub_llm(event_generation=[
            '{"eventTitle": "A Missing Lantern", "eventDescription": "Mira lost a lantern.", '
            '"eventType": "side", "targetSubsceneId": "gull_inn", "relatedKeyEventIndex": 0, "mood": "uneasy"}'
        ])
        director = LLMDirector(llm)
        npc = session.npc_by_id("mira")

        draft = await director.draft_event(session, current_key_event(session), npc)

        assert draft.event_title == "A Missing Lantern"
        assert draft.target_subscene_id == "gull_inn"
        assert draft.related_key_event_index == 0
        assert draft.model_extra == {"mood": "uneasy"}
        assert "Event giver: Mira (mira)" in llm.calls[0][2][0]["content"]

    async def test_decide_chain(self, session, stub_llm):
        llm = stub_llm(event_chain=['{"shouldGenerateNew": false, "keyEventCompleted": true, "reason": "lamp found"}'])
        event = _resolved(session, "e1")
        decision = await LLMDirector(llm).decide_chain(session, event, Option(id="o1", text="Climb the tower"))

        assert decision.key_event_completed is True
        assert decision.should_generate_new is False
        assert decision.reason == "lamp found"
        assert "Player choice: Climb the tower" in llm.calls[0][2][0]["content"]


# ── RuleDirector ─────────────────────────────────────────────


class TestRuleDirector:
    async def test_round_robin(self, session):
        director = RuleDirector()
        key_event = current_key_event(session)
        picked = []
        for i in range(4):
            selection = await director.select_npc(session, key_event)
            picked.append(selection.npc_id)
            add_event(session, Event(event_id=f"e{i}", target_npc_id=selection.npc_id, round=1))
        assert picked == ["mira", "old_tom", "kestrel", "mira"]
        assert selection.reason == "round-robin"

    async def test_draft_uses_home_subscene(self, session):
        director = RuleDirector()
        key_event = current_key_event(session)

        draft = await director.draft_event(session, key_event, session.npc_by_id("kestrel"))
        assert draft.target_subscene_id == "pier"
        assert draft.event_title == "Kestrel: The Dark Lighthouse"
        assert draft.related_key_event_index == 0

        homeless = await director.draft_event(session, key_event, session.npc_by_id("old_tom"))
        assert homeless.target_subscene_id is None

    async def test_key_event_completes_after_n_events(self, session):
        director = RuleDirector(events_per_key_event=2)
        option = Option(id="o1", text="Help")

        first = await director.decide_chain(session, _resolved(session, "e1"), option)
        assert first.should_generate_new is True
        assert first.key_event_completed is False

        second = await director.decide_chain(session, _resolved(session, "e2"), option)
        assert second.key_event_completed is True
        assert second.should_generate_new is False

    async def test_only_events_of_current_key_event_count(self, session):
        director = RuleDirector(events_per_key_event=1)
        decision = await director.decide_chain(
            session, _resolved(session, "e1", related=1), Option(id="o1", text="x")
        )
        assert decision.key_event_completed is False

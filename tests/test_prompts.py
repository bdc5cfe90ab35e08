"""Tests for Handlebars prompt rendering: helpers, template overrides and
the context builders for the narrator and world-interaction roles."""

import pytest

from visual_tavern.models import Event, Option, WorldSession, session_from_dict
from visual_tavern.prompts import (
    DEFAULT_TEMPLATES,
    PromptError,
    Prompts,
    base_context,
    narrator_context,
    render_prompt,
    world_context,
)
from visual_tavern.world.events import add_event


@pytest.fixture
def session(reference_data) -> WorldSession:
    return session_from_dict({
        **reference_data,
        "sessionId": "world_test",
        "mode": "world_interaction",
        "currentScene": "harbor",
        "visitedScenes": ["harbor"],
    })


# ── render_prompt ────────────────────────────────────────────


def test_render_simple_variable():
    assert render_prompt("Hello {{name}}!", {"name": "Ren"}) == "Hello Ren!"


def test_triple_stash_does_not_escape():
    assert render_prompt("{{{text}}}", {"text": "Gull & Anchor"}) == "Gull & Anchor"


def test_render_missing_variable():
    assert render_prompt("Hello {{name}}!", {}) == "Hello !"


def test_render_invalid_template():
    with pytest.raises(PromptError):
        render_prompt("{{> missing_partial}}", {})


def test_take_first_n():
    tpl = "{{#take items 2}}{{this}} {{/take}}"
    assert render_prompt(tpl, {"items": ["a", "b", "c"]}) == "a b "


def test_last_n():
    tpl = "{{#last items 2}}{{this}} {{/last}}"
    assert render_prompt(tpl, {"items": ["a", "b", "c", "d"]}) == "c d "


def test_last_with_missing_list():
    assert render_prompt("{{#last items 2}}{{this}}{{/last}}", {}) == ""


# ── Prompts ──────────────────────────────────────────────────


def test_defaults_cover_every_role():
    prompts = Prompts()
    for role in ("npc_selection", "event_generation", "event_chain", "npc_interaction", "option_response"):
        assert role in prompts.templates
        assert f"{role}_user" in prompts.templates
    assert "narrator" in prompts.templates


def test_unknown_template():
    with pytest.raises(PromptError, match="Unknown prompt template"):
        Prompts().render("bard", {})


def test_constructor_overrides():
    prompts = Prompts({"narrator": "Narrate {{{world.title}}}"})
    assert prompts.render("narrator", {"world": {"title": "X"}}) == "Narrate X"
    assert prompts.templates["event_chain"] == DEFAULT_TEMPLATES["event_chain"]


def test_load_overrides_from_directory(tmp_path):
    (tmp_path / "narrator.hbs").write_text("Custom {{{player.name}}}", encoding="utf-8")
    (tmp_path / "unrelated.hbs").write_text("ignored", encoding="utf-8")
    prompts = Prompts.load(tmp_path)
    assert prompts.templates["narrator"] == "Custom {{{player.name}}}"
    assert "unrelated" not in prompts.templates


def test_load_without_directory():
    assert Prompts.load(None).templates == DEFAULT_TEMPLATES


# ── context builders ─────────────────────────────────────────


def test_base_context(session):
    ctx = base_context(session)
    assert ctx["world"]["title"] == "Lanterns over Saltmere"
    assert ctx["player"]["name"] == "Ren"
    assert ctx["scene"]["id"] == "harbor"
    assert [s["id"] for s in ctx["scenes"]] == ["harbor", "lighthouse"]
    assert "subscenes" not in ctx["scenes"][0]
    assert ctx["visited_scenes"] == ["harbor"]


def test_npc_variants_exclude_base(session):
    npcs = {n["id"]: n for n in base_context(session)["npcs"]}
    assert npcs["mira"]["variants"] == ["expression_happy", "expression_worried", "clothing_rain_coat"]
    assert npcs["kestrel"]["variants"] == []


def test_narrator_prompt_renders(session):
    ctx = narrator_context(session, "look around")
    text = Prompts().render("narrator", ctx)
    assert 'set in "Lanterns over Saltmere"' in text
    assert "harbor: Saltmere Harbor" in text
    assert "old_tom: Old Tom (variants: expression_angry pose_sitting )" in text
    assert "[END_CHOICE]" in text
    assert ctx["action"] == "look around"


def test_world_context(session):
    for i in range(7):
        add_event(session, Event(event_id=f"e{i}", target_npc_id="mira", round=1, event_title=f"E{i}"))
    ctx = world_context(session, option=Option(id="o1", text="Help her"))
    assert ctx["round"] == 1
    assert ctx["key_event"]["title"] == "The Dark Lighthouse"
    assert [e["event_id"] for e in ctx["recent_events"]] == ["e2", "e3", "e4", "e5", "e6"]
    assert [s["id"] for s in ctx["subscenes"]] == ["gull_inn", "pier", "lamp_room"]
    assert ctx["option"] == {"id": "o1", "text": "Help her"}
    assert "npc" not in ctx


def test_world_context_past_last_key_event(session):
    session.current_key_event_index = 3
    assert world_context(session)["key_event"] == {}


def test_event_chain_user_prompt_renders(session):
    npc = session.npc_by_id("mira")
    event = Event(event_id="e1", target_npc_id="mira", round=1, event_title="Lost Lantern")
    ctx = world_context(session, npc=npc, event=event, option=Option(id="o1", text="Search the pier"))
    text = Prompts().render("event_chain_user", ctx)
    assert "Completed event: Lost Lantern" in text
    assert "Player choice: Search the pier" in text
    assert "Key event #0: The Dark Lighthouse" in text

"""Handlebars prompt rendering for the narrator and the world-interaction roles.

Each role has a system template ``<role>`` and, for the one-shot roles, a
user template ``<role>_user``. Built-in defaults can be overridden per name
by dropping ``<name>.hbs`` into the prompts directory.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pybars

from .models import Event, LocatedSubscene, Npc, Option, Session, WorldSession

logger = logging.getLogger(__name__)

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}} iterates over the first N items."""
    result = []
    for item in list(items or [])[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} iterates over the last N items."""
    result = []
    for item in list(items or [])[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Default templates ────────────────────────────────────

_TAG_GRAMMAR = """\
Answer ONLY with the following tags, one per line:
[NARRATION: text]
[DIALOGUE: speaker_id, "text"]   (use speaker_id "player" for {{{player.name}}})
[SCENE_CHANGE: scene_id]
[TRANSITION: text]
[CHOICE: title]
[OPTION: text]
[END_CHOICE]
End every reply with exactly one CHOICE block offering 2-4 options.\
"""

DEFAULT_NARRATOR_PROMPT = """\
You are the Game Master of a visual novel set in "{{{world.title}}}".
The player character is {{{player.name}}}.

## Current Scene
{{{scene.id}}}: {{{scene.name}}}
{{{scene.description}}}

## Scenes
{{#each scenes}}
- {{{id}}}: {{{name}}}
{{/each}}

## Characters
{{#each npcs}}
- {{{id}}}: {{{name}}}{{#if variants}} (variants: {{#each variants}}{{{this}}} {{/each}}){{/if}}
{{/each}}

""" + _TAG_GRAMMAR

DEFAULT_NPC_SELECTION_PROMPT = """\
You choose which character should drive the next event of a story set in \
"{{{world.title}}}". Reply with JSON only.\
"""

DEFAULT_NPC_SELECTION_USER = """\
Round {{round}}. Current key event #{{key_event_index}}: {{{key_event.title}}}
{{{key_event.description}}}

## Characters
{{#each npcs}}
- {{{id}}}: {{{name}}}
{{/each}}

## Recent Events
{{#last recent_events 5}}
- {{{event_title}}} ({{{target_npc_id}}})
{{/last}}

Reply as {"selectedNpcId": "<id>", "reason": "<why>"}.\
"""

DEFAULT_EVENT_GENERATION_PROMPT = """\
You design small events that move a story set in "{{{world.title}}}" \
towards its current key event. Reply with JSON only.\
"""

DEFAULT_EVENT_GENERATION_USER = """\
Round {{round}}. Key event #{{key_event_index}}: {{{key_event.title}}}
{{{key_event.description}}}

Event giver: {{{npc.name}}} ({{{npc.id}}})

## Subscenes
{{#each subscenes}}
- {{{id}}}: {{{name}}} in {{{parent_scene_name}}}
{{/each}}

## Completed Events
{{#last recent_events 5}}
- {{{event_title}}}
{{/last}}

Reply as {"eventTitle": "...", "eventDescription": "...", "eventType": "...", \
"targetSubsceneId": "<subscene id>", "relatedKeyEventIndex": {{key_event_index}} }.\
"""

DEFAULT_EVENT_CHAIN_PROMPT = """\
You track the progress of key events in a story set in "{{{world.title}}}". \
Reply with JSON only.\
"""

DEFAULT_EVENT_CHAIN_USER = """\
Key event #{{key_event_index}}: {{{key_event.title}}}
{{{key_event.description}}}

Completed event: {{{event.event_title}}}
{{{event.event_description}}}
Player choice: {{{option.text}}}

Reply as {"shouldGenerateNew": true|false, "keyEventCompleted": true|false, \
"reason": "..."}.\
"""

DEFAULT_NPC_INTERACTION_PROMPT = """\
You narrate a scene of a story set in "{{{world.title}}}". \
The player character is {{{player.name}}}.

""" + _TAG_GRAMMAR

DEFAULT_NPC_INTERACTION_USER = """\
{{{npc.name}}} ({{{npc.id}}}) approaches {{{player.name}}}\
{{#if subscene}} in {{{subscene.name}}}{{/if}}.

Event: {{{event.event_title}}}
{{{event.event_description}}}

## Characters
{{#each npcs}}
- {{{id}}}: {{{name}}}
{{/each}}

Play out the encounter and end with the player's options.\
"""

DEFAULT_OPTION_RESPONSE_PROMPT = """\
You narrate how a story set in "{{{world.title}}}" reacts to the player's \
decision. The player character is {{{player.name}}}.
Answer with [NARRATION: ...] and [DIALOGUE: speaker_id, "..."] lines only.\
"""

DEFAULT_OPTION_RESPONSE_USER = """\
Event: {{{event.event_title}}}
{{{event.event_description}}}

{{{player.name}}} chose: {{{option.text}}}

Describe how {{{npc.name}}} ({{{npc.id}}}) responds.\
"""

DEFAULT_TEMPLATES: dict[str, str] = {
    "narrator": DEFAULT_NARRATOR_PROMPT,
    "npc_selection": DEFAULT_NPC_SELECTION_PROMPT,
    "npc_selection_user": DEFAULT_NPC_SELECTION_USER,
    "event_generation": DEFAULT_EVENT_GENERATION_PROMPT,
    "event_generation_user": DEFAULT_EVENT_GENERATION_USER,
    "event_chain": DEFAULT_EVENT_CHAIN_PROMPT,
    "event_chain_user": DEFAULT_EVENT_CHAIN_USER,
    "npc_interaction": DEFAULT_NPC_INTERACTION_PROMPT,
    "npc_interaction_user": DEFAULT_NPC_INTERACTION_USER,
    "option_response": DEFAULT_OPTION_RESPONSE_PROMPT,
    "option_response_user": DEFAULT_OPTION_RESPONSE_USER,
}


class Prompts:
    """Template set with per-name overrides loaded from a directory."""

    def __init__(self, templates: dict[str, str] | None = None) -> None:
        self.templates = dict(DEFAULT_TEMPLATES)
        if templates:
            self.templates.update(templates)

    @classmethod
    def load(cls, prompts_dir: Path | None) -> "Prompts":
        overrides: dict[str, str] = {}
        if prompts_dir is not None and prompts_dir.is_dir():
            for name in DEFAULT_TEMPLATES:
                path = prompts_dir / f"{name}.hbs"
                if path.is_file():
                    overrides[name] = path.read_text(encoding="utf-8")
            if overrides:
                logger.info("Loaded prompt overrides from %s: %s", prompts_dir, sorted(overrides))
        return cls(overrides)

    def render(self, name: str, context: dict[str, Any]) -> str:
        template = self.templates.get(name)
        if template is None:
            raise PromptError(f"Unknown prompt template: {name}")
        return render_prompt(template, context)


# ── Context builders ─────────────────────────────────────


def _npc_ctx(npc: Npc) -> dict[str, Any]:
    ctx = npc.model_dump(mode="json")
    ctx["variants"] = [k for k in npc.images if k != "base"]
    return ctx


def base_context(session: Session) -> dict[str, Any]:
    """World, player, scene and NPC data shared by every role."""
    scene = session.scene_by_id(session.current_scene)
    return {
        "world": session.world_setting.model_dump(mode="json"),
        "player": session.world_setting.player.model_dump(mode="json"),
        "scene": scene.model_dump(mode="json") if scene else {},
        "scenes": [s.model_dump(mode="json", exclude={"subscenes"}) for s in session.scene_setting.scenes],
        "visited_scenes": list(session.visited_scenes),
        "npcs": [_npc_ctx(n) for n in session.npc_setting.npcs],
    }


def narrator_context(session: Session, action: str) -> dict[str, Any]:
    ctx = base_context(session)
    ctx["action"] = action
    ctx["last_action"] = session.last_action
    return ctx


def world_context(
    session: WorldSession,
    *,
    npc: Npc | None = None,
    event: Event | None = None,
    subscene: LocatedSubscene | None = None,
    option: Option | None = None,
) -> dict[str, Any]:
    """Context for the world-interaction roles. Recent events are the last five of the history."""
    ctx = base_context(session)
    key_event = session.key_event(session.current_key_event_index)
    ctx.update({
        "round": session.current_round,
        "key_event_index": session.current_key_event_index,
        "key_event": key_event.model_dump(mode="json") if key_event else {},
        "completed_key_events": list(session.completed_key_events),
        "subscenes": [s.model_dump(mode="json") for s in session.all_subscenes()],
        "recent_events": [e.model_dump(mode="json") for e in session.event_history[-5:]],
    })
    if npc is not None:
        ctx["npc"] = _npc_ctx(npc)
    if event is not None:
        ctx["event"] = event.model_dump(mode="json")
    if subscene is not None:
        ctx["subscene"] = subscene.model_dump(mode="json")
    if option is not None:
        ctx["option"] = option.model_dump(mode="json")
    return ctx

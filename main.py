"""Visual Tavern — terminal launcher. Plays a preset world against the configured LLM."""

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv

from visual_tavern import EngineError, create_engine, load_config, load_reference_data
from visual_tavern.models import Choice, Dialogue, Narration, SceneChange, StepEvent, Transition

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

DEFAULT_PRESET = ROOT / "presets" / "harbor-town"


def _render(step) -> str:
    if isinstance(step, Narration):
        return step.content
    if isinstance(step, Dialogue):
        variant = f" [{step.active_image_ref}]" if step.active_image_ref else ""
        return f"{step.speaker_name}{variant}: \"{step.content}\""
    if isinstance(step, SceneChange):
        name = step.scene_meta.name if step.scene_meta else step.scene_id
        return f"== {name} =="
    if isinstance(step, Transition):
        return f"... {step.content} ..."
    if isinstance(step, Choice):
        lines = [f"? {step.title}"]
        lines += [f"  {i}. {o.text}" for i, o in enumerate(step.options, 1)]
        return "\n".join(lines)
    return str(step)


async def play_visual(engine, session_id: str) -> None:
    visual = engine.visual
    stream = None
    if not visual.state(session_id).game_started:
        stream = visual.process_action(session_id, engine.config.start_action)
    while True:
        if stream is not None:
            async for event in stream:
                if isinstance(event, StepEvent):
                    print(_render(event.step))
                    print()
        try:
            action = input("> ").strip()
        except EOFError:
            return
        if action in ("/quit", "/exit"):
            return
        if not action:
            stream = None
        elif action == "/regen":
            stream = visual.regenerate(session_id)
        elif action.startswith("/go "):
            scene = await visual.move_to_scene(session_id, action[4:].strip())
            print(f"== {scene.name} ==")
            stream = None
        else:
            stream = visual.process_action(session_id, action)


async def play_world(engine, session_id: str) -> None:
    world = engine.world
    await world.generate_event(session_id)
    while True:
        state = world.state(session_id)
        if state.all_key_events_completed:
            print("All key events completed.")
            return
        if not state.active_events:
            print(f"-- round {state.current_round + 1} --")
            state = await world.start_new_round(session_id)
            if not state.active_events:
                print("No events left.")
                return
        event = state.active_events[0]
        result = await world.interact(session_id, event.event_id)
        for step in result.narrative_steps:
            print(_render(step))
        if not result.options:
            await world.select_option(session_id, event.event_id, "continue")
            continue
        try:
            choice = input("> ").strip()
        except EOFError:
            return
        index = int(choice) - 1 if choice.isdigit() else 0
        option = result.options[min(max(index, 0), len(result.options) - 1)]
        selection = await world.select_option(session_id, event.event_id, option.id)
        for step in selection.completed_event.option_response.narrative_steps:
            print(_render(step))
        if selection.key_event_completed:
            print("** Key event completed **")


def main():
    parser = argparse.ArgumentParser(description="Visual Tavern terminal launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: DATA_DIR or ./data)")
    parser.add_argument("--preset", type=Path, default=DEFAULT_PRESET,
                        help="Directory with worldSetting/npcSetting/sceneSetting JSON")
    parser.add_argument("--mode", choices=("visual", "world"), default="visual")
    parser.add_argument("--session", default=None,
                        help="Resume an existing session id instead of creating one")
    args = parser.parse_args()

    config = load_config()
    if args.data_dir:
        config.data_dir = args.data_dir
    engine = create_engine(config)

    try:
        session_id = args.session
        if session_id is None:
            reference = load_reference_data(args.preset)
            service = engine.visual if args.mode == "visual" else engine.world
            session_id = service.create_session(reference).session_id
            print(f"Session {session_id}")

        play = play_visual if args.mode == "visual" else play_world
        asyncio.run(play(engine, session_id))
    except EngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nShutting down...")


if __name__ == "__main__":
    main()

"""End-to-end wiring through create_engine with the offline EchoLLM."""

from conftest import PRESET_DIR
from visual_tavern import create_engine, load_reference_data
from visual_tavern.config import EngineConfig, LLMConfig
from visual_tavern.engine import build_llm
from visual_tavern.llm import EchoLLM, HttpLLM
from visual_tavern.world import LLMDirector, RuleDirector


def test_build_llm_offline():
    assert isinstance(build_llm(EngineConfig()), EchoLLM)


def test_build_llm_http():
    config = EngineConfig(llm=LLMConfig(provider_url="http://localhost:5001", model="m"))
    assert isinstance(build_llm(config), HttpLLM)


def test_director_follows_llm(tmp_path, stub_llm):
    offline = create_engine(EngineConfig(data_dir=tmp_path))
    assert isinstance(offline.world._director, RuleDirector)

    online = create_engine(EngineConfig(data_dir=tmp_path), llm=stub_llm())
    assert isinstance(online.world._director, LLMDirector)


async def test_offline_visual_game(tmp_path):
    engine = create_engine(EngineConfig(data_dir=tmp_path))
    session = engine.visual.create_session(load_reference_data(PRESET_DIR))

    result = await engine.visual.run_action(session.session_id, "start game")

    assert result.response.startswith("[NARRATION: Begin the story")
    assert result.action_options == engine.config.default_action_options
    assert (tmp_path / "sessions" / session.session_id / "history.json").is_file()


async def test_offline_world_game(tmp_path):
    engine = create_engine(EngineConfig(data_dir=tmp_path))
    session = engine.world.create_session(load_reference_data(PRESET_DIR))

    generated = await engine.world.generate_event(session.session_id)
    interaction = await engine.world.interact(session.session_id, generated.event.event_id)
    selection = await engine.world.select_option(session.session_id, generated.event.event_id, "option_1")

    assert interaction.total_steps == 1
    assert selection.completed_event.status == "completed"
    assert selection.new_event is not None

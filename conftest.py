import json
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from visual_tavern.config import EngineConfig
from visual_tavern.llm import Messages, StreamChunk
from visual_tavern.storage import JsonFileStorage, SessionStore

PRESET_DIR = Path(__file__).parent / "presets" / "harbor-town"


# ---------------------------------------------------------------------------
# StubLLM: dispatches by stage name, independent queue per stage
# ---------------------------------------------------------------------------

class StubLLM:
    """Deterministic LLM stand-in for tests.

    Provide stage name → list of responses (in call order). A response is
    either a string or a list of tokens; stream() yields a string in 8-char
    chunks and a token list as given. An Exception instance is raised in
    place of a response, and an Exception as the last token of a list is
    raised after the tokens before it were streamed.
    """

    def __init__(self, responses: dict[str, list]) -> None:
        self._queues: dict[str, list] = {k: list(v) for k, v in responses.items()}
        self.calls: list[tuple[str, str, Messages]] = []

    def _next(self, stage: str, system: str, messages: Messages):
        self.calls.append((stage, system, messages))
        queue = self._queues.get(stage)
        if not queue:
            raise AssertionError(
                f"StubLLM: unexpected call to stage={stage!r} "
                f"(no responses queued). calls so far: {[c[0] for c in self.calls]}"
            )
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def __call__(self, stage: str, system: str, messages: Messages) -> str:
        response = self._next(stage, system, messages)
        return response if isinstance(response, str) else "".join(response)

    async def stream(self, stage: str, system: str, messages: Messages) -> AsyncIterator[StreamChunk]:
        response = self._next(stage, system, messages)
        if isinstance(response, str):
            response = [response[i:i + 8] for i in range(0, len(response), 8)]
        for token in response:
            if isinstance(token, Exception):
                raise token
            yield StreamChunk(text=token)
        yield StreamChunk(usage={"output_tokens": len(response)})

    def stages(self) -> list[str]:
        return [c[0] for c in self.calls]

    def assert_exhausted(self) -> None:
        """Assert every queued response was consumed."""
        leftover = {k: v for k, v in self._queues.items() if v}
        if leftover:
            raise AssertionError(f"StubLLM: unused responses remain: {leftover}")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def reference_data() -> dict:
    """The harbor-town preset as raw JSON sections (fresh copy per test)."""
    return {
        key: json.loads((PRESET_DIR / f"{key}.json").read_text(encoding="utf-8"))
        for key in ("worldSetting", "npcSetting", "sceneSetting")
    }


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(JsonFileStorage(tmp_path))


@pytest.fixture
def config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(data_dir=tmp_path)


@pytest.fixture
def stub_llm():
    """Factory: stub_llm(narrator=[...], npc_interaction=[...]) → StubLLM."""
    def _make(**responses: list) -> StubLLM:
        return StubLLM(responses)
    return _make

"""Composition root: builds the services from an EngineConfig."""

from __future__ import annotations

import logging

from .config import EngineConfig, load_config
from .llm import LLM, EchoLLM, HttpLLM
from .prompts import Prompts
from .storage import JsonFileStorage, SessionStore
from .visual import VisualGame
from .world import LLMDirector, RuleDirector, WorldInteraction
from .world.director import Director

logger = logging.getLogger(__name__)


class Engine:
    def __init__(
        self,
        config: EngineConfig,
        store: SessionStore,
        llm: LLM,
        visual: VisualGame,
        world: WorldInteraction,
    ) -> None:
        self.config = config
        self.store = store
        self.llm = llm
        self.visual = visual
        self.world = world


def build_llm(config: EngineConfig) -> LLM:
    llm_cfg = config.llm
    if not llm_cfg.provider_url:
        logger.warning("LLM_PROVIDER_URL not set, using EchoLLM")
        return EchoLLM()
    return HttpLLM(
        provider_url=llm_cfg.provider_url,
        api_key=llm_cfg.api_key,
        provider_format=llm_cfg.provider_format,
        model=llm_cfg.model,
        timeout=llm_cfg.timeout,
        max_tokens=llm_cfg.max_tokens,
    )


def create_engine(
    config: EngineConfig | None = None,
    *,
    llm: LLM | None = None,
    director: Director | None = None,
) -> Engine:
    """Wire storage, LLM, prompts and both game services.

    Without an explicit director, world sessions are driven by the LLM when a
    backend is configured and by RuleDirector otherwise.
    """
    config = config or load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = SessionStore(JsonFileStorage(config.data_dir))
    llm = llm or build_llm(config)
    prompts = Prompts.load(config.prompts_dir)
    if director is None:
        if isinstance(llm, EchoLLM):
            director = RuleDirector(config.rule_events_per_key_event)
        else:
            director = LLMDirector(llm, prompts)

    logger.info("Engine ready: data_dir=%s llm=%s", config.data_dir, type(llm).__name__)
    return Engine(
        config=config,
        store=store,
        llm=llm,
        visual=VisualGame(store=store, llm=llm, prompts=prompts, config=config),
        world=WorldInteraction(store=store, llm=llm, director=director, prompts=prompts, config=config),
    )

"""LLM interactive-fiction engine: visual-novel and world-interaction modes.

Data flow for one player action:
  action → narrator prompt → streamed LLM text → IncrementalEmitter
  (re-parses the buffer with parse_narrative) → step envelopes to the client
  → on completion the exchange is committed to the SessionStore.

Entry point for applications: create_engine(), which returns the store,
the LLM client and both game services wired from an EngineConfig.
"""

# Re-export the public surface so `from visual_tavern import ...` works.

from .config import EngineConfig, LLMConfig, load_config  # noqa: F401
from .engine import Engine, create_engine  # noqa: F401
from .errors import (  # noqa: F401
    EngineError,
    EventNotFound,
    HistoryIndexError,
    InvalidContentError,
    InvalidInputError,
    InvalidReferenceData,
    LLMOutputError,
    NoHistoryError,
    NoMoreKeyEvents,
    NotFoundError,
    NpcNotFound,
    SceneNotFound,
    SessionNotFound,
    UpstreamError,
)
from .llm import LLM, EchoLLM, HttpLLM, LLMError, StreamChunk  # noqa: F401
from .parser import ParseContext, parse_narrative  # noqa: F401
from .storage import JsonFileStorage, MemoryStorage, SessionStore, load_reference_data  # noqa: F401
from .streaming import IncrementalEmitter, emit_steps  # noqa: F401
from .variants import resolve_variant_image  # noqa: F401
from .visual import VisualGame  # noqa: F401
from .world import LLMDirector, RuleDirector, WorldInteraction  # noqa: F401

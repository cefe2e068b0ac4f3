"""
Engine registry.

`ENGINES` maps engine id -> definition instance. Callers go through
`get_engine()` so an unknown id surfaces as a ConfigurationError rather than
a KeyError deep in a request.
"""

import logging
import os
from typing import Iterable, Optional

from ..errors import ConfigurationError, UnknownEngineError
from .base import EngineDefinition, EngineParams, ImageEngine, VideoEngine
from .image import Flux1Engine, ZImageBaseEngine, ZImageTurboEngine
from .video import (
    HaiperEngine,
    HunyuanEngine,
    KlingEngine,
    LightricksEngine,
    MinimaxEngine,
    MochiEngine,
    SoraEngine,
    Veo3Engine,
    ViduEngine,
    WanEngine,
)

logger = logging.getLogger(__name__)

ENGINE_CLASSES: list[type[EngineDefinition]] = [
    ZImageTurboEngine,
    ZImageBaseEngine,
    Flux1Engine,
    Veo3Engine,
    ViduEngine,
    WanEngine,
    HunyuanEngine,
    KlingEngine,
    MinimaxEngine,
    HaiperEngine,
    MochiEngine,
    LightricksEngine,
    SoraEngine,
]

ENGINES: dict[str, EngineDefinition] = {cls.engine_id: cls() for cls in ENGINE_CLASSES}


def enabled_engine_ids() -> Optional[list[str]]:
    """GENFLOW_ENABLED_ENGINES as a list, or None when unset (= all)."""
    raw = os.environ.get("GENFLOW_ENABLED_ENGINES", "").strip()
    if not raw:
        return None
    return [part.strip() for part in raw.split(",") if part.strip()]


def get_engine(engine_id: str, registry: Optional[dict[str, EngineDefinition]] = None) -> EngineDefinition:
    registry = ENGINES if registry is None else registry
    engine = registry.get(engine_id)
    if engine is None:
        raise UnknownEngineError(engine_id)
    return engine


def validate_registry(
    enabled: Optional[Iterable[str]] = None,
    engine_classes: Optional[list[type[EngineDefinition]]] = None,
) -> dict[str, EngineDefinition]:
    """
    Fail-fast startup check.

    - engine ids are unique
    - every enabled id is registered
    - every engine's defaults pass its own validation and transform cleanly

    Returns the (possibly filtered) registry. Raises ConfigurationError.
    """
    classes = ENGINE_CLASSES if engine_classes is None else engine_classes

    registry: dict[str, EngineDefinition] = {}
    for cls in classes:
        if cls.engine_id in registry:
            raise ConfigurationError(f"Duplicate engine id: {cls.engine_id}")
        registry[cls.engine_id] = cls()

    if enabled is not None:
        enabled = list(enabled)
        missing = [engine_id for engine_id in enabled if engine_id not in registry]
        if missing:
            raise ConfigurationError(f"Enabled engines not registered: {', '.join(missing)}")
        registry = {engine_id: registry[engine_id] for engine_id in enabled}

    for engine_id, engine in registry.items():
        defaults = engine.default_values()
        result = engine.validate(defaults)
        if not isinstance(result, EngineParams):
            details = "; ".join(f"{e.field}: {e.message}" for e in result)
            raise ConfigurationError(f"Defaults for {engine_id} do not validate: {details}")
        try:
            engine.to_engine_input(engine.normalize(result))
        except Exception as e:
            raise ConfigurationError(f"Defaults for {engine_id} do not transform: {e}") from e

    logger.info(f"Engine registry OK: {len(registry)} engines ({', '.join(registry)})")
    return registry


__all__ = [
    "ENGINES",
    "ENGINE_CLASSES",
    "EngineDefinition",
    "EngineParams",
    "ImageEngine",
    "VideoEngine",
    "enabled_engine_ids",
    "get_engine",
    "validate_registry",
]

"""
Request validator / transformer.

Turns raw form data for an engine into submit-ready params, or a
ValidationFailed listing every offending field. Never raises for bad input;
the only exception out of here is UnknownEngineError.
"""

import logging
from typing import Any, Optional, Union

from .engines import EngineDefinition, EngineParams, get_engine
from .errors import ValidationFailed

logger = logging.getLogger(__name__)


def merge_input(engine: EngineDefinition, raw_input: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Raw input layered over the engine defaults, engine tag forced."""
    data = engine.default_values()
    if raw_input:
        data.update(raw_input)
    data["engine"] = engine.engine_id
    return data


def prepare(
    engine_id: str,
    raw_input: Optional[dict[str, Any]],
    registry: Optional[dict[str, EngineDefinition]] = None,
) -> Union[EngineParams, ValidationFailed]:
    engine = get_engine(engine_id, registry)

    if raw_input is not None and not isinstance(raw_input, dict):
        return ValidationFailed(
            engine_id=engine_id,
            errors=[{"field": "input", "message": "Input must be an object"}],
        )

    result = engine.validate(merge_input(engine, raw_input))
    if not isinstance(result, EngineParams):
        logger.info(f"Validation failed for {engine_id}: {[e.field for e in result]}")
        return ValidationFailed(engine_id=engine_id, errors=result)

    return engine.normalize(result)

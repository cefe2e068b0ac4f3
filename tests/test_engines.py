"""Tests for the engine registry and per-engine rules."""

from __future__ import annotations

import itertools
from typing import Literal, get_args, get_origin

import pytest
from pydantic.alias_generators import to_camel

from genflow.engines import ENGINES, EngineParams, get_engine, validate_registry
from genflow.engines.base import VideoEngine
from genflow.engines.video import WanEngine
from genflow.errors import ConfigurationError, UnknownEngineError
from genflow.models import MediaType, Process

EXPECTED_ENGINES = {
    "zimage-turbo", "zimage-base", "flux1",
    "veo3", "vidu", "wan", "hunyuan", "kling", "minimax", "haiper", "mochi", "lightricks", "sora",
}


def _validate(engine_id: str, **overrides):
    engine = get_engine(engine_id)
    data = engine.default_values()
    data.update(overrides)
    return engine, engine.validate(data)


def _fields(result) -> list[str]:
    return [e.field for e in result]


def _literal_options(annotation) -> tuple:
    if get_origin(annotation) is Literal:
        return get_args(annotation)
    for arg in get_args(annotation):
        if get_origin(arg) is Literal:
            return get_args(arg)
    return ()


def _option_grid(engine) -> list[dict]:
    """Every combination of the engine's enumerated options, keyed by wire name."""
    axes = {}
    for name, field in engine.params_model.model_fields.items():
        if name == "engine":
            continue
        options = _literal_options(field.annotation)
        if options:
            axes[field.alias or to_camel(name)] = options
    keys = list(axes)
    return [dict(zip(keys, combo)) for combo in itertools.product(*(axes[k] for k in keys))]


# ============================================================================
# Registry
# ============================================================================


def test_registry_contains_all_engines() -> None:
    assert set(ENGINES) == EXPECTED_ENGINES


@pytest.mark.parametrize("engine_id", sorted(EXPECTED_ENGINES))
def test_defaults_validate_and_transform(engine_id: str) -> None:
    """Every engine's defaults validate and produce an engine input."""
    engine = get_engine(engine_id)
    params = engine.validate(engine.default_values())
    assert isinstance(params, EngineParams)
    assert params.engine == engine_id
    engine_input = engine.to_engine_input(engine.normalize(params))
    assert isinstance(engine_input, dict)
    assert engine_input["prompt"] == ""


@pytest.mark.parametrize("engine_id", sorted(EXPECTED_ENGINES))
def test_every_accepted_option_combination_transforms(engine_id: str) -> None:
    """Anything validate() accepts transforms; anything it refuses names its fields."""
    engine = get_engine(engine_id)
    grid = _option_grid(engine)
    for process in sorted(engine.supported_processes, key=lambda p: p.value):
        accepted = 0
        for options in grid:
            data = {**engine.default_values(), **options, "process": process.value}
            if process in (Process.IMG2IMG, Process.IMG2VID):
                data["sourceImage"] = "https://cdn.test/source.png"
            result = engine.validate(data)
            if isinstance(result, EngineParams):
                accepted += 1
                params = engine.normalize(result)
                assert isinstance(engine.to_engine_input(params), dict), options
                assert isinstance(engine.to_display_metadata(params), dict), options
                assert engine.requested_quantity(params) >= 1
            else:
                assert result, options
                assert all(err.field and err.message for err in result), options
        assert accepted, f"no accepted combination for {engine_id} {process.value}"


def test_unknown_engine_raises() -> None:
    with pytest.raises(UnknownEngineError) as exc:
        get_engine("dalle")
    assert exc.value.engine_id == "dalle"
    assert isinstance(exc.value, ConfigurationError)


def test_validate_registry_filters_enabled() -> None:
    registry = validate_registry(["flux1", "veo3"])
    assert list(registry) == ["flux1", "veo3"]


def test_validate_registry_rejects_unknown_enabled() -> None:
    with pytest.raises(ConfigurationError, match="not registered"):
        validate_registry(["flux1", "midjourney"])


def test_validate_registry_rejects_duplicates() -> None:
    with pytest.raises(ConfigurationError, match="Duplicate"):
        validate_registry(engine_classes=[WanEngine, WanEngine])


def test_validate_registry_rejects_invalid_defaults() -> None:
    class BrokenEngine(WanEngine):
        def check(self, params):
            from genflow.errors import FieldError
            return [FieldError(field="prompt", message="always wrong")]

    with pytest.raises(ConfigurationError, match="do not validate"):
        validate_registry(engine_classes=[BrokenEngine])


def test_describe_lists_defaults_in_camel_case() -> None:
    description = get_engine("flux1").describe()
    assert description["engineId"] == "flux1"
    assert description["mediaType"] == MediaType.IMAGE.value
    assert description["processes"] == ["img2img", "txt2img"]
    assert description["defaults"]["cfgScale"] == 3.5
    assert "cfg_scale" not in description["defaults"]


# ============================================================================
# Shared rules
# ============================================================================


def test_camel_and_snake_keys_both_accepted() -> None:
    engine = get_engine("zimage-base")
    camel = engine.validate({"engine": "zimage-base", "cfgScale": 6})
    snake = engine.validate({"engine": "zimage-base", "cfg_scale": 6})
    assert camel.cfg_scale == snake.cfg_scale == 6


def test_prompt_too_long_is_field_error() -> None:
    _, result = _validate("flux1", prompt="x" * 1501)
    assert _fields(result) == ["prompt"]


def test_out_of_range_is_field_error() -> None:
    _, result = _validate("zimage-turbo", steps=40)
    assert _fields(result) == ["steps"]


def test_unsupported_process_rejected() -> None:
    _, result = _validate("mochi", process="img2vid", sourceImage="https://img/a.png")
    assert "process" in _fields(result)


def test_too_many_resources_rejected() -> None:
    resources = [{"id": i} for i in range(5)]
    _, result = _validate("zimage-base", resources=resources)
    assert _fields(result) == ["resources"]


def test_engine_without_resources_rejects_any() -> None:
    _, result = _validate("veo3", resources=[{"id": 1}])
    assert _fields(result) == ["resources"]


def test_display_metadata_keeps_resource_ids() -> None:
    engine, params = _validate("flux1", prompt="a cat", resources=[{"id": 7, "strength": 0.8}])
    metadata = engine.to_display_metadata(params)
    assert metadata["prompt"] == "a cat"
    assert metadata["resources"] == [{"id": 7, "strength": 0.8}]


def test_additional_networks_keyed_by_air_or_version() -> None:
    engine, params = _validate(
        "flux1",
        resources=[{"id": 1, "air": "urn:air:flux1:lora:civitai:1@1"}, {"id": 2, "strength": 0.5}],
    )
    networks = engine.to_engine_input(params)["additionalNetworks"]
    assert networks == {
        "urn:air:flux1:lora:civitai:1@1": {"strength": 1.0},
        "version:2": {"strength": 0.5},
    }


def test_negative_seed_is_dropped_from_input() -> None:
    engine, params = _validate("zimage-turbo", seed=-1)
    assert "seed" not in engine.to_engine_input(params)
    engine, params = _validate("zimage-turbo", seed=42)
    assert engine.to_engine_input(params)["seed"] == 42


# ============================================================================
# Image engines
# ============================================================================


def test_image_quantity_is_requested_outputs() -> None:
    engine, params = _validate("zimage-turbo", quantity=3)
    assert engine.requested_quantity(params) == 3
    assert engine.to_engine_input(params)["quantity"] == 3


def test_img2img_requires_source_image() -> None:
    _, result = _validate("flux1", process="img2img")
    assert _fields(result) == ["sourceImage"]


def test_txt2img_drops_source_image() -> None:
    engine, params = _validate("flux1", sourceImage="https://img/a.png")
    params = engine.normalize(params)
    assert params.source_image is None
    assert "image" not in engine.to_engine_input(params)


def test_flux_img2img_sends_image_and_denoise() -> None:
    engine, params = _validate("flux1", process="img2img", sourceImage="https://img/a.png", denoise=0.4)
    engine_input = engine.to_engine_input(engine.normalize(params))
    assert engine_input["image"] == "https://img/a.png"
    assert engine_input["denoise"] == 0.4


def test_flux_draft_forces_fast_settings() -> None:
    engine, params = _validate("flux1", mode="draft", steps=40)
    params = engine.normalize(params)
    assert params.steps == 8
    assert params.cfg_scale == 1.0
    assert engine.to_engine_input(params)["model"] == "flux-dev-draft"


def test_flux_ultra_rejects_resources() -> None:
    _, result = _validate("flux1", mode="ultra", resources=[{"id": 1}])
    assert _fields(result) == ["resources"]


def test_zimage_aspect_ratio_sets_dimensions() -> None:
    engine, params = _validate("zimage-turbo", aspectRatio="16:9")
    engine_input = engine.to_engine_input(params)
    assert (engine_input["width"], engine_input["height"]) == (1344, 768)


# ============================================================================
# Video engines
# ============================================================================


@pytest.mark.parametrize(
    "engine_id",
    sorted(eid for eid, engine in ENGINES.items() if Process.IMG2VID in engine.supported_processes),
)
def test_img2vid_without_source_image_is_error_on_source_image(engine_id: str) -> None:
    _, result = _validate(engine_id, process="img2vid")
    assert isinstance(result, list)
    assert "sourceImage" in _fields(result)


def test_video_requested_quantity_is_one() -> None:
    engine, params = _validate("wan")
    assert isinstance(engine, VideoEngine)
    assert engine.requested_quantity(params) == 1


def test_txt2vid_drops_images() -> None:
    engine, params = _validate("vidu", sourceImage="https://img/a.png", endImage="https://img/b.png")
    params = engine.normalize(params)
    assert params.source_image is None
    assert params.end_image is None


def test_end_image_alone_becomes_source_image() -> None:
    engine, params = _validate("vidu", process="img2vid", endImage="https://img/end.png")
    params = engine.normalize(params)
    assert params.source_image.url == "https://img/end.png"
    assert params.end_image is None
    assert engine.to_engine_input(params)["sourceImage"] == "https://img/end.png"


def test_img2vid_aspect_ratio_follows_image() -> None:
    engine, params = _validate("wan", process="img2vid", sourceImage="https://img/a.png")
    params = engine.normalize(params)
    assert params.aspect_ratio is None
    assert "aspectRatio" not in engine.to_engine_input(params)


def test_veo3_keeps_aspect_ratio_and_uses_reference_mode() -> None:
    engine, params = _validate(
        "veo3", process="img2vid", sourceImage="https://img/a.png", aspectRatio="9:16", fastMode=False
    )
    engine_input = engine.to_engine_input(engine.normalize(params))
    assert engine_input["aspectRatio"] == "9:16"
    assert engine_input["mode"] == "REFERENCE_2_VIDEO"
    assert engine_input["model"] == "veo3_fast"
    assert engine_input["imageUrls"] == ["https://img/a.png"]


def test_veo3_text_mode() -> None:
    engine, params = _validate("veo3", prompt="waves", fastMode=False, referenceImages=["https://img/r.png"])
    engine_input = engine.to_engine_input(engine.normalize(params))
    assert engine_input["mode"] == "TEXT_2_VIDEO"
    assert engine_input["model"] == "veo3"
    assert "imageUrls" not in engine_input


def test_wan_version_selects_ecosystem() -> None:
    engine, params = _validate("wan", version="v2.1", process="img2vid", sourceImage="https://img/a.png")
    assert engine.to_engine_input(engine.normalize(params))["ecosystem"] == "WanVideo14B_I2V_480p"
    engine, params = _validate("wan", version="v2.5", resolution="1080p", duration=10)
    assert engine.to_engine_input(engine.normalize(params))["ecosystem"] == "WanVideo-25-T2V"


def test_wan_resolution_must_match_version() -> None:
    _, result = _validate("wan", version="v2.1", resolution="1080p")
    assert _fields(result) == ["resolution"]


def test_wan_duration_must_match_version() -> None:
    _, result = _validate("wan", version="v2.2", duration=10)
    assert _fields(result) == ["duration"]


def test_wan_shift_only_for_v22() -> None:
    engine, params = _validate("wan", version="v2.5", shift=5, interpolatorModel="film")
    params = engine.normalize(params)
    assert params.shift is None
    engine_input = engine.to_engine_input(params)
    assert "shift" not in engine_input
    assert "interpolatorModel" not in engine_input


def test_kling_start_and_end_frames_need_professional_mode() -> None:
    _, result = _validate(
        "kling", process="img2vid", sourceImage="https://img/a.png", endImage="https://img/b.png"
    )
    assert _fields(result) == ["endImage"]
    _, params = _validate(
        "kling", process="img2vid", sourceImage="https://img/a.png", endImage="https://img/b.png",
        mode="professional",
    )
    assert isinstance(params, EngineParams)


def test_minimax_1080p_limited_to_six_seconds() -> None:
    _, result = _validate("minimax", resolution="1080p", duration=10)
    assert _fields(result) == ["resolution"]


def test_haiper_eight_seconds_is_720p_only() -> None:
    _, result = _validate("haiper", duration=8, resolution=1080)
    assert _fields(result) == ["resolution"]


def test_sora_1080p_requires_pro() -> None:
    _, result = _validate("sora", resolution="1080p")
    assert _fields(result) == ["resolution"]
    engine, params = _validate("sora", resolution="1080p", usePro=True)
    assert engine.to_engine_input(params)["model"] == "sora-2-pro"

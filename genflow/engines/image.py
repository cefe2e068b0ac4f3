"""
Image engines: Z-Image (turbo / base) and Flux.
"""

from typing import Literal, Optional

from pydantic import Field

from ..errors import FieldError
from ..models import Process
from .base import (
    NEGATIVE_PROMPT_MAX_LENGTH,
    EngineParams,
    ImageEngine,
    ImageParams,
    additional_networks,
    compact,
    image_size,
    seed_or_none,
)

ZIMAGE_SIZES = {
    "1:1": (1024, 1024),
    "16:9": (1344, 768),
    "4:3": (1152, 896),
    "3:4": (896, 1152),
    "9:16": (768, 1344),
}

FLUX_SIZES = {
    "1:1": (1024, 1024),
    "16:9": (1344, 768),
    "3:2": (1216, 832),
    "2:3": (832, 1216),
    "9:16": (768, 1344),
}

FLUX_MODELS = {
    "draft": "flux-dev-draft",
    "standard": "flux-dev",
    "pro": "flux-pro",
    "ultra": "flux-ultra",
}

FLUX_DRAFT_STEPS = 8

ZImageAspect = Literal["1:1", "16:9", "4:3", "3:4", "9:16"]


# ── Z-Image ──────────────────────────────────────────────────────────────────

class ZImageTurboParams(ImageParams):
    engine: Literal["zimage-turbo"] = "zimage-turbo"
    aspect_ratio: ZImageAspect = "1:1"
    steps: int = Field(9, ge=1, le=15)


class ZImageBaseParams(ImageParams):
    engine: Literal["zimage-base"] = "zimage-base"
    negative_prompt: Optional[str] = Field(None, max_length=NEGATIVE_PROMPT_MAX_LENGTH)
    aspect_ratio: ZImageAspect = "1:1"
    steps: int = Field(30, ge=10, le=50)
    cfg_scale: float = Field(4.0, ge=1, le=10)


class ZImageTurboEngine(ImageEngine):
    engine_id = "zimage-turbo"
    label = "Z-Image Turbo"
    params_model = ZImageTurboParams
    base_cost = 1.0

    def to_engine_input(self, params: ZImageTurboParams) -> dict:
        width, height = image_size(params.aspect_ratio, ZIMAGE_SIZES)
        return compact({
            "engine": "z-image",
            "model": "turbo",
            "prompt": params.prompt,
            "width": width,
            "height": height,
            "steps": params.steps,
            "cfgScale": 1.0,  # distilled model, guidance is fixed
            "seed": seed_or_none(params.seed),
            "quantity": params.quantity,
        })


class ZImageBaseEngine(ImageEngine):
    engine_id = "zimage-base"
    label = "Z-Image Base"
    params_model = ZImageBaseParams
    base_cost = 2.0
    max_resources = 4

    def to_engine_input(self, params: ZImageBaseParams) -> dict:
        width, height = image_size(params.aspect_ratio, ZIMAGE_SIZES)
        return compact({
            "engine": "z-image",
            "model": "base",
            "prompt": params.prompt,
            "negativePrompt": params.negative_prompt,
            "width": width,
            "height": height,
            "steps": params.steps,
            "cfgScale": params.cfg_scale,
            "seed": seed_or_none(params.seed),
            "quantity": params.quantity,
            "additionalNetworks": additional_networks(params.resources),
        })


# ── Flux ─────────────────────────────────────────────────────────────────────

class Flux1Params(ImageParams):
    engine: Literal["flux1"] = "flux1"
    mode: Literal["draft", "standard", "pro", "ultra"] = "standard"
    aspect_ratio: Literal["1:1", "16:9", "3:2", "2:3", "9:16"] = "1:1"
    steps: int = Field(28, ge=1, le=50)
    cfg_scale: float = Field(3.5, ge=1, le=20)
    denoise: float = Field(0.75, ge=0, le=1)


class Flux1Engine(ImageEngine):
    engine_id = "flux1"
    label = "Flux.1"
    params_model = Flux1Params
    supported_processes = frozenset({Process.TXT2IMG, Process.IMG2IMG})
    base_cost = 2.0
    max_resources = 9

    def check(self, params: Flux1Params) -> list[FieldError]:
        errors = super().check(params)
        if params.mode == "ultra" and params.resources:
            errors.append(FieldError(field="resources", message="Flux Ultra does not support additional resources"))
        if params.mode == "draft" and params.process == Process.IMG2IMG:
            errors.append(FieldError(field="mode", message="Draft mode is only available for text-to-image"))
        return errors

    def normalize(self, params: Flux1Params) -> EngineParams:
        params = super().normalize(params)
        if params.mode == "draft":
            params = params.model_copy(update={"steps": FLUX_DRAFT_STEPS, "cfg_scale": 1.0})
        return params

    def to_engine_input(self, params: Flux1Params) -> dict:
        width, height = image_size(params.aspect_ratio, FLUX_SIZES)
        img2img = params.process == Process.IMG2IMG and params.source_image is not None
        return compact({
            "engine": "flux",
            "model": FLUX_MODELS[params.mode],
            "prompt": params.prompt,
            "width": width,
            "height": height,
            "steps": params.steps,
            "cfgScale": params.cfg_scale,
            "seed": seed_or_none(params.seed),
            "quantity": params.quantity,
            "image": params.source_image.url if img2img else None,
            "denoise": params.denoise if img2img else None,
            "additionalNetworks": additional_networks(params.resources),
        })

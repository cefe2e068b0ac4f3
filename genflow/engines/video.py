"""
Video engines.

Each engine maps its form params onto the job service's `videoGen` input.
Text-to-video vs image-to-video handling (dropping the image, promoting an
end frame, aspect ratio following the image) lives in VideoEngine; only the
engine-specific rules are spelled out here.
"""

from typing import Literal, Optional

from pydantic import Field

from ..errors import FieldError
from ..models import Process
from .base import (
    NEGATIVE_PROMPT_MAX_LENGTH,
    EngineParams,
    SourceImage,
    VideoEngine,
    VideoParams,
    additional_networks,
    compact,
    seed_or_none,
)


def _url(image: Optional[SourceImage]) -> Optional[str]:
    return image.url if image is not None else None


# ── Veo 3 ────────────────────────────────────────────────────────────────────

class Veo3Params(VideoParams):
    engine: Literal["veo3"] = "veo3"
    negative_prompt: Optional[str] = Field(None, max_length=NEGATIVE_PROMPT_MAX_LENGTH)
    aspect_ratio: Optional[Literal["16:9", "9:16"]] = "16:9"
    duration: Literal[4, 6, 8] = 8
    generate_audio: bool = False
    fast_mode: bool = True
    reference_images: list[SourceImage] = Field(default_factory=list, max_length=2)


class Veo3Engine(VideoEngine):
    engine_id = "veo3"
    label = "Veo 3"
    params_model = Veo3Params
    base_cost = 40.0
    aspect_from_image = False

    def normalize(self, params: Veo3Params) -> EngineParams:
        params = super().normalize(params)
        if params.process == Process.TXT2VID and params.reference_images:
            params = params.model_copy(update={"reference_images": []})
        if params.process == Process.IMG2VID and not params.fast_mode:
            # Reference-to-video only runs on the fast model
            params = params.model_copy(update={"fast_mode": True})
        return params

    def to_engine_input(self, params: Veo3Params) -> dict:
        image_urls = [img.url for img in ([params.source_image] if params.source_image else [])]
        image_urls += [img.url for img in params.reference_images]
        return compact({
            "engine": "veo3",
            "model": "veo3_fast" if params.fast_mode else "veo3",
            "mode": "REFERENCE_2_VIDEO" if image_urls else "TEXT_2_VIDEO",
            "prompt": params.prompt,
            "negativePrompt": params.negative_prompt,
            "aspectRatio": params.aspect_ratio,
            "duration": params.duration,
            "generateAudio": params.generate_audio,
            "imageUrls": image_urls or None,
            "seed": seed_or_none(params.seed),
        })


# ── Vidu ─────────────────────────────────────────────────────────────────────

class ViduParams(VideoParams):
    engine: Literal["vidu"] = "vidu"
    end_image: Optional[SourceImage] = None
    aspect_ratio: Optional[Literal["16:9", "1:1", "9:16"]] = "16:9"
    style: Literal["general", "anime"] = "general"
    duration: Literal[4, 8] = 4
    movement_amplitude: Literal["auto", "small", "medium", "large"] = "auto"
    enable_background_music: bool = False


class ViduEngine(VideoEngine):
    engine_id = "vidu"
    label = "Vidu Q1"
    params_model = ViduParams
    base_cost = 20.0

    def to_engine_input(self, params: ViduParams) -> dict:
        return compact({
            "engine": "vidu",
            "model": "q1",
            "prompt": params.prompt,
            # style only applies to text-to-video
            "style": params.style if params.process == Process.TXT2VID else None,
            "duration": params.duration,
            "aspectRatio": params.aspect_ratio,
            "movementAmplitude": params.movement_amplitude,
            "enableBackgroundMusic": params.enable_background_music,
            "sourceImage": _url(params.source_image),
            "endSourceImage": _url(params.end_image),
            "seed": seed_or_none(params.seed),
        })


# ── Wan ──────────────────────────────────────────────────────────────────────

WAN_VERSIONS = {
    "v2.1": {
        "t2v": "WanVideo14B_T2V",
        "i2v": "WanVideo14B_I2V_720p",
        "i2v_480p": "WanVideo14B_I2V_480p",
        "resolutions": ("480p", "720p"),
        "durations": (3, 5),
        "aspect_ratios": ("16:9", "3:2", "1:1", "2:3", "9:16"),
    },
    "v2.2": {
        "t2v": "WanVideo-22-T2V-A14B",
        "i2v": "WanVideo-22-I2V-A14B",
        "resolutions": ("480p", "720p"),
        "durations": (3, 5),
        "aspect_ratios": ("16:9", "1:1", "9:16"),
    },
    "v2.2-5b": {
        "t2v": "WanVideo-22-TI2V-5B",
        "i2v": "WanVideo-22-TI2V-5B",
        "resolutions": ("580p", "720p"),
        "durations": (3, 5),
        "aspect_ratios": ("16:9", "1:1", "9:16"),
    },
    "v2.5": {
        "t2v": "WanVideo-25-T2V",
        "i2v": "WanVideo-25-I2V",
        "resolutions": ("480p", "720p", "1080p"),
        "durations": (5, 10),
        "aspect_ratios": ("16:9", "1:1", "9:16"),
    },
}


class WanParams(VideoParams):
    engine: Literal["wan"] = "wan"
    version: Literal["v2.1", "v2.2", "v2.2-5b", "v2.5"] = "v2.2"
    negative_prompt: Optional[str] = Field(None, max_length=NEGATIVE_PROMPT_MAX_LENGTH)
    aspect_ratio: Optional[Literal["16:9", "3:2", "1:1", "2:3", "9:16"]] = "1:1"
    resolution: Literal["480p", "580p", "720p", "1080p"] = "480p"
    duration: Literal[3, 5, 10] = 5
    cfg_scale: float = Field(4.0, ge=1, le=10)
    shift: Optional[float] = Field(None, ge=1, le=20)
    interpolator_model: Literal["none", "film", "rife"] = "none"
    use_turbo: bool = False


class WanEngine(VideoEngine):
    engine_id = "wan"
    label = "Wan"
    params_model = WanParams
    base_cost = 15.0
    max_resources = 2

    def check(self, params: WanParams) -> list[FieldError]:
        errors = super().check(params)
        version = WAN_VERSIONS[params.version]
        if params.resolution not in version["resolutions"]:
            errors.append(FieldError(
                field="resolution",
                message=f"Wan {params.version} supports {', '.join(version['resolutions'])}",
            ))
        if params.duration not in version["durations"]:
            errors.append(FieldError(
                field="duration",
                message=f"Wan {params.version} supports durations of {', '.join(map(str, version['durations']))} seconds",
            ))
        if (
            params.process == Process.TXT2VID
            and params.aspect_ratio is not None
            and params.aspect_ratio not in version["aspect_ratios"]
        ):
            errors.append(FieldError(
                field="aspectRatio",
                message=f"Wan {params.version} supports {', '.join(version['aspect_ratios'])}",
            ))
        return errors

    def normalize(self, params: WanParams) -> EngineParams:
        params = super().normalize(params)
        if params.version != "v2.2" and (params.shift is not None or params.interpolator_model != "none"):
            # shift / interpolation are 2.2-only controls
            params = params.model_copy(update={"shift": None, "interpolator_model": "none"})
        return params

    def ecosystem(self, params: WanParams) -> str:
        version = WAN_VERSIONS[params.version]
        if params.process == Process.TXT2VID:
            return version["t2v"]
        if params.resolution == "480p" and "i2v_480p" in version:
            return version["i2v_480p"]
        return version["i2v"]

    def to_engine_input(self, params: WanParams) -> dict:
        return compact({
            "engine": "wan",
            "ecosystem": self.ecosystem(params),
            "version": params.version,
            "prompt": params.prompt,
            "negativePrompt": params.negative_prompt,
            "aspectRatio": params.aspect_ratio,
            "resolution": params.resolution,
            "duration": params.duration,
            "cfgScale": params.cfg_scale,
            "shift": params.shift,
            "interpolatorModel": params.interpolator_model if params.interpolator_model != "none" else None,
            "useTurbo": params.use_turbo,
            "images": self.image_urls(params),
            "seed": seed_or_none(params.seed),
            "loras": additional_networks(params.resources),
        })


# ── Hunyuan ──────────────────────────────────────────────────────────────────

class HunyuanParams(VideoParams):
    engine: Literal["hunyuan"] = "hunyuan"
    aspect_ratio: Optional[Literal["16:9", "3:2", "1:1", "2:3", "9:16"]] = "16:9"
    duration: Literal[3, 5] = 5
    cfg_scale: float = Field(6.0, ge=1, le=10)
    steps: int = Field(20, ge=10, le=40)


class HunyuanEngine(VideoEngine):
    engine_id = "hunyuan"
    label = "Hunyuan"
    params_model = HunyuanParams
    supported_processes = frozenset({Process.TXT2VID})
    base_cost = 15.0
    max_resources = 3

    def to_engine_input(self, params: HunyuanParams) -> dict:
        return compact({
            "engine": "hunyuan",
            "model": "hunyuan-video",
            "prompt": params.prompt,
            "aspectRatio": params.aspect_ratio,
            "duration": params.duration,
            "cfgScale": params.cfg_scale,
            "steps": params.steps,
            "frameRate": 24,
            "seed": seed_or_none(params.seed),
            "loras": additional_networks(params.resources),
        })


# ── Kling ────────────────────────────────────────────────────────────────────

class KlingParams(VideoParams):
    engine: Literal["kling"] = "kling"
    model: Literal["v1.6", "v2", "v2.5-turbo"] = "v2.5-turbo"
    mode: Literal["standard", "professional"] = "standard"
    negative_prompt: Optional[str] = Field(None, max_length=NEGATIVE_PROMPT_MAX_LENGTH)
    end_image: Optional[SourceImage] = None
    aspect_ratio: Optional[Literal["16:9", "1:1", "9:16"]] = "16:9"
    duration: Literal[5, 10] = 5
    cfg_scale: float = Field(0.5, ge=0, le=1)


class KlingEngine(VideoEngine):
    engine_id = "kling"
    label = "Kling"
    params_model = KlingParams
    base_cost = 30.0

    def check(self, params: KlingParams) -> list[FieldError]:
        errors = super().check(params)
        # A lone end frame gets promoted to the start frame; start + end needs pro mode
        if params.source_image and params.end_image and params.mode != "professional":
            errors.append(FieldError(
                field="endImage",
                message="Start and end frames together require professional mode",
            ))
        return errors

    def to_engine_input(self, params: KlingParams) -> dict:
        return compact({
            "engine": "kling",
            "model": params.model,
            "mode": params.mode,
            "prompt": params.prompt,
            "negativePrompt": params.negative_prompt,
            "aspectRatio": params.aspect_ratio,
            "duration": params.duration,
            "cfgScale": params.cfg_scale,
            "sourceImage": _url(params.source_image),
            "endImage": _url(params.end_image),
            "seed": seed_or_none(params.seed),
        })


# ── MiniMax ──────────────────────────────────────────────────────────────────

class MinimaxParams(VideoParams):
    engine: Literal["minimax"] = "minimax"
    model: Literal["hailuo-02", "hailuo-2.3"] = "hailuo-02"
    duration: Literal[6, 10] = 6
    resolution: Literal["768p", "1080p"] = "768p"
    prompt_optimizer: bool = True


class MinimaxEngine(VideoEngine):
    engine_id = "minimax"
    label = "MiniMax Hailuo"
    params_model = MinimaxParams
    base_cost = 25.0

    def check(self, params: MinimaxParams) -> list[FieldError]:
        errors = super().check(params)
        if params.resolution == "1080p" and params.duration != 6:
            errors.append(FieldError(field="resolution", message="1080p is only available for 6 second videos"))
        return errors

    def to_engine_input(self, params: MinimaxParams) -> dict:
        return compact({
            "engine": "minimax",
            "model": params.model,
            "prompt": params.prompt,
            "duration": params.duration,
            "resolution": params.resolution,
            "promptOptimizer": params.prompt_optimizer,
            "sourceImage": _url(params.source_image),
        })


# ── Haiper ───────────────────────────────────────────────────────────────────

class HaiperParams(VideoParams):
    engine: Literal["haiper"] = "haiper"
    negative_prompt: Optional[str] = Field(None, max_length=NEGATIVE_PROMPT_MAX_LENGTH)
    aspect_ratio: Optional[Literal["16:9", "4:3", "1:1", "3:4", "9:16"]] = "16:9"
    duration: Literal[2, 4, 8] = 4
    resolution: Literal[720, 1080] = 720


class HaiperEngine(VideoEngine):
    engine_id = "haiper"
    label = "Haiper"
    params_model = HaiperParams
    base_cost = 15.0

    def check(self, params: HaiperParams) -> list[FieldError]:
        errors = super().check(params)
        if params.duration == 8 and params.resolution != 720:
            errors.append(FieldError(field="resolution", message="8 second videos are limited to 720p"))
        return errors

    def to_engine_input(self, params: HaiperParams) -> dict:
        return compact({
            "engine": "haiper",
            "model": "v2",
            "prompt": params.prompt,
            "negativePrompt": params.negative_prompt,
            "aspectRatio": params.aspect_ratio,
            "duration": params.duration,
            "resolution": params.resolution,
            "sourceImage": _url(params.source_image),
            "seed": seed_or_none(params.seed),
        })


# ── Mochi ────────────────────────────────────────────────────────────────────

class MochiParams(VideoParams):
    engine: Literal["mochi"] = "mochi"
    enable_prompt_enhancer: bool = True


class MochiEngine(VideoEngine):
    engine_id = "mochi"
    label = "Mochi"
    params_model = MochiParams
    supported_processes = frozenset({Process.TXT2VID})
    base_cost = 10.0

    def to_engine_input(self, params: MochiParams) -> dict:
        return compact({
            "engine": "mochi",
            "prompt": params.prompt,
            "enablePromptEnhancer": params.enable_prompt_enhancer,
            "seed": seed_or_none(params.seed),
        })


# ── Lightricks ───────────────────────────────────────────────────────────────

class LightricksParams(VideoParams):
    engine: Literal["lightricks"] = "lightricks"
    negative_prompt: Optional[str] = Field(None, max_length=NEGATIVE_PROMPT_MAX_LENGTH)
    aspect_ratio: Optional[Literal["16:9", "1:1", "9:16"]] = "16:9"
    duration: Literal[5, 10] = 5
    cfg_scale: float = Field(3.0, ge=3, le=3.5)
    steps: int = Field(25, ge=20, le=40)


class LightricksEngine(VideoEngine):
    engine_id = "lightricks"
    label = "Lightricks LTXV"
    params_model = LightricksParams
    base_cost = 10.0

    def to_engine_input(self, params: LightricksParams) -> dict:
        return compact({
            "engine": "lightricks",
            "model": "ltxv-13b",
            "prompt": params.prompt,
            "negativePrompt": params.negative_prompt,
            "aspectRatio": params.aspect_ratio,
            "duration": params.duration,
            "cfgScale": params.cfg_scale,
            "steps": params.steps,
            "sourceImage": _url(params.source_image),
            "seed": seed_or_none(params.seed),
        })


# ── Sora ─────────────────────────────────────────────────────────────────────

class SoraParams(VideoParams):
    engine: Literal["sora"] = "sora"
    use_pro: bool = False
    aspect_ratio: Optional[Literal["16:9", "9:16"]] = "16:9"
    duration: Literal[4, 8, 12] = 4
    resolution: Literal["720p", "1080p"] = "720p"


class SoraEngine(VideoEngine):
    engine_id = "sora"
    label = "Sora 2"
    params_model = SoraParams
    base_cost = 40.0
    aspect_from_image = False

    def check(self, params: SoraParams) -> list[FieldError]:
        errors = super().check(params)
        if params.resolution == "1080p" and not params.use_pro:
            errors.append(FieldError(field="resolution", message="1080p requires Sora 2 Pro"))
        return errors

    def to_engine_input(self, params: SoraParams) -> dict:
        return compact({
            "engine": "sora",
            "model": "sora-2-pro" if params.use_pro else "sora-2",
            "prompt": params.prompt,
            "aspectRatio": params.aspect_ratio,
            "duration": params.duration,
            "resolution": params.resolution,
            "images": self.image_urls(params),
        })

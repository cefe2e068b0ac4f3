"""
Engine definitions: the declarative record every generation backend fills in.

An engine contributes:
  - a pydantic params model (structural validation + defaults)
  - `check()`           cross-field rules ("source image required for img2vid")
  - `normalize()`       drop mutually exclusive fields, promote end → start frame
  - `to_engine_input()` the exact payload the job service expects (pure)
  - `to_display_metadata()` what we keep around for audit / remix

Nothing outside `genflow.engines` branches on an engine id; new engines are
one new class plus one line in the registry.
"""

from typing import Any, ClassVar, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from ..errors import FieldError
from ..models import MediaType, Process, ResourceRef

PROMPT_MAX_LENGTH = 1500
NEGATIVE_PROMPT_MAX_LENGTH = 1000
MAX_SEED = 4294967295


# ── Shared parameter pieces ──────────────────────────────────────────────────

class SourceImage(BaseModel):
    """An input image. Accepts a bare URL string or {url, width, height}."""
    url: str = Field(..., min_length=1)
    width: Optional[int] = Field(None, gt=0)
    height: Optional[int] = Field(None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _from_url(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"url": data}
        return data


class EngineParams(BaseModel):
    """Fields every engine understands. Subclasses pin `engine` to a literal."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    engine: str
    process: Process
    prompt: str = Field("", max_length=PROMPT_MAX_LENGTH)
    seed: Optional[int] = Field(None, ge=-1, le=MAX_SEED)
    resources: list[ResourceRef] = Field(default_factory=list)


class ImageParams(EngineParams):
    process: Process = Process.TXT2IMG
    quantity: int = Field(1, ge=1, le=20)
    source_image: Optional[SourceImage] = None


class VideoParams(EngineParams):
    process: Process = Process.TXT2VID
    source_image: Optional[SourceImage] = None


def compact(data: dict) -> dict:
    """Drop None values so the job service only sees what was set."""
    return {k: v for k, v in data.items() if v is not None}


def seed_or_none(seed: Optional[int]) -> Optional[int]:
    # -1 means "random" in the form; the service wants the key absent
    if seed is None or seed < 0:
        return None
    return seed


def additional_networks(resources: list[ResourceRef]) -> Optional[dict]:
    if not resources:
        return None
    return {
        (r.air or f"version:{r.id}"): {"strength": r.strength}
        for r in resources
    }


def image_size(aspect_ratio: str, sizes: dict[str, tuple[int, int]]) -> tuple[int, int]:
    return sizes.get(aspect_ratio) or next(iter(sizes.values()))


def _field_path(loc: tuple) -> str:
    path = ".".join(str(part) for part in loc)
    return path or "input"


# ── Engine definition ────────────────────────────────────────────────────────

class EngineDefinition:
    """
    Base class for a registered engine.

    Subclasses set the ClassVars and implement `to_engine_input`.
    """

    engine_id: ClassVar[str]
    label: ClassVar[str]
    media_type: ClassVar[MediaType]
    step_type: ClassVar[str]
    supported_processes: ClassVar[frozenset]
    params_model: ClassVar[type[EngineParams]]
    base_cost: ClassVar[float] = 1.0
    max_resources: ClassVar[int] = 0

    def default_values(self) -> dict[str, Any]:
        params = self.params_model(engine=self.engine_id)
        return params.model_dump(by_alias=True, mode="json", exclude_none=True)

    def validate(self, data: dict[str, Any]) -> Union[EngineParams, list[FieldError]]:
        """Structural + cross-field validation. Returns params or field errors."""
        try:
            params = self.params_model.model_validate(data)
        except ValidationError as exc:
            return [
                FieldError(field=_field_path(err["loc"]), message=err["msg"])
                for err in exc.errors()
            ]
        errors = self.check(params)
        if errors:
            return errors
        return params

    def check(self, params: EngineParams) -> list[FieldError]:
        errors: list[FieldError] = []
        if params.process not in self.supported_processes:
            supported = ", ".join(sorted(p.value for p in self.supported_processes))
            errors.append(FieldError(
                field="process",
                message=f"{self.label} does not support {params.process.value} (supported: {supported})",
            ))
        if len(params.resources) > self.max_resources:
            if self.max_resources == 0:
                message = f"{self.label} does not accept additional resources"
            else:
                message = f"{self.label} accepts at most {self.max_resources} resources"
            errors.append(FieldError(field="resources", message=message))
        return errors

    def normalize(self, params: EngineParams) -> EngineParams:
        return params

    def to_engine_input(self, params: EngineParams) -> dict[str, Any]:
        raise NotImplementedError

    def to_display_metadata(self, params: EngineParams) -> dict[str, Any]:
        metadata = params.model_dump(
            by_alias=True,
            mode="json",
            exclude_none=True,
            exclude={"resources"},
        )
        if params.resources:
            metadata["resources"] = [{"id": r.id, "strength": r.strength} for r in params.resources]
        return metadata

    def requested_quantity(self, params: EngineParams) -> int:
        return getattr(params, "quantity", 1)

    def describe(self) -> dict[str, Any]:
        return {
            "engineId": self.engine_id,
            "label": self.label,
            "mediaType": self.media_type.value,
            "processes": sorted(p.value for p in self.supported_processes),
            "maxResources": self.max_resources,
            "defaults": self.default_values(),
        }


class ImageEngine(EngineDefinition):
    media_type = MediaType.IMAGE
    step_type = "imageGen"
    supported_processes = frozenset({Process.TXT2IMG})

    def check(self, params: EngineParams) -> list[FieldError]:
        errors = super().check(params)
        if params.process == Process.IMG2IMG and not getattr(params, "source_image", None):
            errors.append(FieldError(
                field="sourceImage",
                message="A source image is required for image-to-image generation",
            ))
        return errors

    def normalize(self, params: EngineParams) -> EngineParams:
        if params.process == Process.TXT2IMG and getattr(params, "source_image", None) is not None:
            return params.model_copy(update={"source_image": None})
        return params


class VideoEngine(EngineDefinition):
    media_type = MediaType.VIDEO
    step_type = "videoGen"
    supported_processes = frozenset({Process.TXT2VID, Process.IMG2VID})
    aspect_from_image: ClassVar[bool] = True

    def check(self, params: EngineParams) -> list[FieldError]:
        errors = super().check(params)
        has_image = getattr(params, "source_image", None) or getattr(params, "end_image", None)
        if params.process == Process.IMG2VID and not has_image:
            errors.append(FieldError(
                field="sourceImage",
                message="A source image is required for image-to-video generation",
            ))
        return errors

    def normalize(self, params: EngineParams) -> EngineParams:
        update: dict[str, Any] = {}
        if params.process == Process.TXT2VID:
            if getattr(params, "source_image", None) is not None:
                update["source_image"] = None
            if getattr(params, "end_image", None) is not None:
                update["end_image"] = None
        elif params.process == Process.IMG2VID:
            # Only an end frame given: it becomes the start frame
            end_image = getattr(params, "end_image", None)
            if params.source_image is None and end_image is not None:
                update["source_image"] = end_image
                update["end_image"] = None
            # Aspect ratio follows the image
            if self.aspect_from_image and getattr(params, "aspect_ratio", None) is not None:
                update["aspect_ratio"] = None
        if update:
            return params.model_copy(update=update)
        return params

    def requested_quantity(self, params: EngineParams) -> int:
        return 1

    def image_urls(self, params: EngineParams) -> Optional[list[str]]:
        urls = [
            img.url
            for img in (getattr(params, "source_image", None), getattr(params, "end_image", None))
            if img is not None
        ]
        return urls or None

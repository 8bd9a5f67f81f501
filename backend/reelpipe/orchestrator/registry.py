"""Step registry: ordered steps per pipeline type and their input bindings.

Everything here is pure. The runner, the executor and the controls consult
the registry; nothing else knows which steps a pipeline type has.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Optional, Type

from pydantic import BaseModel, ValidationError

from reelpipe.errors import ConfigurationError
from reelpipe.schemas.pipeline import (
    MusicVideoPipelineConfig,
    StepState,
    VideoPipelineConfig,
)


class PipelineType(StrEnum):
    VIDEO = "video"
    MUSIC_VIDEO = "music_video"


class StepId(StrEnum):
    # video
    THEME_DIRECTOR = "theme_director"
    MUSIC_COMPOSER = "music_composer"
    VISUAL_DIRECTOR = "visual_director"
    IMAGE_GENERATOR = "image_generator"
    VIDEO_COMPOSER = "video_composer"
    # music_video
    SONG_ARCHITECT = "song_architect"
    SUNO_EXPERT = "suno_expert"
    SONG_SELECTOR = "song_selector"
    VISUAL_DESIGNER = "visual_designer"


PIPELINE_STEPS: dict[PipelineType, tuple[StepId, ...]] = {
    PipelineType.VIDEO: (
        StepId.THEME_DIRECTOR,
        StepId.MUSIC_COMPOSER,
        StepId.VISUAL_DIRECTOR,
        StepId.IMAGE_GENERATOR,
        StepId.VIDEO_COMPOSER,
    ),
    PipelineType.MUSIC_VIDEO: (
        StepId.SONG_ARCHITECT,
        StepId.SUNO_EXPERT,
        StepId.SONG_SELECTOR,
        StepId.VISUAL_DESIGNER,
    ),
}

CONFIG_MODELS: dict[PipelineType, Type[VideoPipelineConfig]] = {
    PipelineType.VIDEO: VideoPipelineConfig,
    PipelineType.MUSIC_VIDEO: MusicVideoPipelineConfig,
}

# Config keys every step of a type receives as base input
BASE_INPUT_KEYS: dict[PipelineType, tuple[str, ...]] = {
    PipelineType.VIDEO: ("theme", "duration", "platform"),
    PipelineType.MUSIC_VIDEO: ("theme", "duration", "platform", "song_brief"),
}


@dataclass(frozen=True)
class InputBinding:
    """Copy a predecessor's result (or one field of it) into a step's input."""

    key: str
    source: StepId
    field: Optional[str] = None

    def resolve(self, result: Optional[dict]) -> Any:
        if result is None:
            return None
        if self.field is None:
            return result
        return result.get(self.field)


def _bind(key: str, source: StepId, field: Optional[str] = None) -> InputBinding:
    return InputBinding(key=key, source=source, field=field)


_THEME = _bind("theme_concept", StepId.THEME_DIRECTOR)
_MUSIC = _bind("music_concept", StepId.MUSIC_COMPOSER)
_SCENES = _bind("scenes", StepId.VISUAL_DIRECTOR, "scenes")
_STYLE = _bind("style_guide", StepId.VISUAL_DIRECTOR, "style_guide")
_SONG = _bind("song_concept", StepId.SONG_ARCHITECT)

STEP_BINDINGS: dict[StepId, tuple[InputBinding, ...]] = {
    StepId.THEME_DIRECTOR: (),
    StepId.MUSIC_COMPOSER: (_THEME,),
    StepId.VISUAL_DIRECTOR: (_THEME, _MUSIC),
    StepId.IMAGE_GENERATOR: (_THEME, _MUSIC, _SCENES, _STYLE),
    StepId.VIDEO_COMPOSER: (
        _THEME,
        _MUSIC,
        _SCENES,
        _STYLE,
        _bind("images", StepId.IMAGE_GENERATOR, "images"),
        _bind("music_url", StepId.MUSIC_COMPOSER, "audio_url"),
    ),
    StepId.SONG_ARCHITECT: (),
    StepId.SUNO_EXPERT: (_SONG,),
    StepId.SONG_SELECTOR: (_SONG, _bind("suno_result", StepId.SUNO_EXPERT)),
    StepId.VISUAL_DESIGNER: (
        _bind("hook", StepId.SONG_ARCHITECT, "hook"),
        _bind("song_title", StepId.SONG_ARCHITECT, "song_title"),
        _bind("mood", StepId.SONG_ARCHITECT, "mood"),
        _bind("genre", StepId.SONG_ARCHITECT, "genre"),
        _bind("selected_audio_url", StepId.SONG_SELECTOR, "selected_audio_url"),
    ),
}


def pipeline_type_of(value: str) -> PipelineType:
    try:
        return PipelineType(value)
    except ValueError:
        raise ConfigurationError(f"Unknown pipeline type '{value}'") from None


def steps_for(pipeline_type: str) -> list[StepId]:
    """Ordered step list for a pipeline type.

    Raises:
        ConfigurationError: If the type is not registered.
    """
    return list(PIPELINE_STEPS[pipeline_type_of(pipeline_type)])


def validate_step(pipeline_type: str, step: str) -> StepId:
    """Return the StepId for a step that belongs to the type's list."""
    steps = steps_for(pipeline_type)
    for candidate in steps:
        if candidate.value == step:
            return candidate
    raise ConfigurationError(
        f"Invalid step '{step}' for {pipeline_type} pipeline. "
        f"Valid steps: {[s.value for s in steps]}"
    )


def read_steps_state(steps_state: Optional[dict]) -> dict[str, StepState]:
    """Typed view of a pipeline's steps_state map."""
    return {
        step: StepState.model_validate(raw)
        for step, raw in (steps_state or {}).items()
    }


def step_state(pipeline, step: str) -> StepState:
    """StepState for one step; missing entries read as the pending default."""
    raw = (pipeline.steps_state or {}).get(str(step))
    return StepState.model_validate(raw) if raw else StepState()


def next_step(pipeline) -> Optional[StepId]:
    """First step, in order, whose state is not completed."""
    for step in steps_for(pipeline.pipeline_type):
        if step_state(pipeline, step.value).status != "completed":
            return step
    return None


def following_step(pipeline_type: str, step: str) -> Optional[StepId]:
    """Step immediately after the given one, or None for the last step."""
    steps = steps_for(pipeline_type)
    index = steps.index(validate_step(pipeline_type, step))
    return steps[index + 1] if index + 1 < len(steps) else None


def validate_config(pipeline_type: str, config: Optional[dict]) -> VideoPipelineConfig:
    """Validate raw config against the type's model.

    Raises:
        ConfigurationError: Unknown type.
        pydantic.ValidationError: Config does not fit the type's model.
    """
    model = CONFIG_MODELS[pipeline_type_of(pipeline_type)]
    return model.model_validate(config or {})


def typed_config(pipeline) -> VideoPipelineConfig:
    """Typed config of a persisted pipeline."""
    try:
        return validate_config(pipeline.pipeline_type, pipeline.config)
    except ValidationError as e:
        raise ConfigurationError(f"Stored config for pipeline {pipeline.id} is invalid: {e}") from e


def build_step_input(pipeline, step: str, extra: Optional[dict] = None) -> dict:
    """Assemble a step's input.

    Config defaults, then predecessor results per the step's bindings, then
    caller-supplied extras (which win). A binding whose source step has not
    completed resolves to None.
    """
    step_id = validate_step(pipeline.pipeline_type, str(step))
    pipeline_type = pipeline_type_of(pipeline.pipeline_type)
    config = typed_config(pipeline)

    payload: dict[str, Any] = {
        key: getattr(config, key) for key in BASE_INPUT_KEYS[pipeline_type]
    }
    for binding in STEP_BINDINGS[step_id]:
        payload[binding.key] = binding.resolve(
            step_state(pipeline, binding.source.value).result
        )
    if extra:
        payload.update(extra)
    return payload


def config_as_dict(config: BaseModel) -> dict:
    return config.model_dump(mode="json")

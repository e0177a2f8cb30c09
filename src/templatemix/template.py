"""
Template model: the declarative description of an audio program.

A template is an ordered list of segments. Each segment plays exactly one
foreground source, either a fixed URL or a placeholder filled by an upload,
optionally over a looping background track. Fades apply uniformly to every
segment. An optional survey pauses the program after one segment.

Documents use the camelCase layout shared with the web front end:

    {"id": ..., "name": ..., "fadeIn": 2, "fadeOut": 3,
     "audioSequence": [{"fileUrl": ..., "label": ...},
                       {"placeholderKey": ..., "backgroundMusic": ..., "label": ...}],
     "survey": {"afterIndex": 1, "question": ..., "options": [...]}}
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import TemplateError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Survey:
    """Question shown once segment `after_index` has finished."""

    after_index: int
    question: str
    options: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "afterIndex": self.after_index,
            "question": self.question,
            "options": list(self.options),
        }


@dataclass(frozen=True)
class Segment:
    """One ordered unit of the program."""

    label: str
    file_url: Optional[str] = None
    placeholder_key: Optional[str] = None
    background_music: Optional[str] = None
    # Presentation data for the UI; never interpreted here
    visual_content: Optional[Mapping[str, Any]] = field(default=None, compare=False)

    @property
    def is_fixed(self) -> bool:
        return self.file_url is not None

    @property
    def source_key(self) -> str:
        """Key the foreground asset is stored under (URL or placeholder key)."""
        return self.file_url if self.file_url is not None else self.placeholder_key

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"label": self.label}
        if self.file_url is not None:
            data["fileUrl"] = self.file_url
        if self.placeholder_key is not None:
            data["placeholderKey"] = self.placeholder_key
        if self.background_music is not None:
            data["backgroundMusic"] = self.background_music
        if self.visual_content is not None:
            data["visualContent"] = dict(self.visual_content)
        return data


@dataclass(frozen=True)
class Template:
    """Immutable, validated program description."""

    id: str
    name: str
    segments: Tuple[Segment, ...]
    fade_in: float
    fade_out: float
    survey: Optional[Survey] = None

    def placeholder_keys(self) -> List[str]:
        """Placeholder keys in segment order, without duplicates."""
        keys: List[str] = []
        for segment in self.segments:
            if not segment.is_fixed and segment.placeholder_key not in keys:
                keys.append(segment.placeholder_key)
        return keys

    def is_survey_gate(self, index: int) -> bool:
        return self.survey is not None and self.survey.after_index == index

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Template":
        """
        Build a Template from a camelCase document.

        Raises:
            TemplateError: If the document is malformed.
        """
        if not isinstance(data, Mapping):
            raise TemplateError("Template document must be an object")

        template_id = _require_str(data, "id", "template")
        name = _require_str(data, "name", f"template '{template_id}'")

        sequence = data.get("audioSequence")
        if not isinstance(sequence, list) or not sequence:
            raise TemplateError(f"Template '{template_id}' needs a non-empty audioSequence")

        segments = tuple(
            _parse_segment(item, index, template_id) for index, item in enumerate(sequence)
        )

        fade_in = _require_seconds(data, "fadeIn", template_id)
        fade_out = _require_seconds(data, "fadeOut", template_id)

        survey = None
        if data.get("survey") is not None:
            survey = _parse_survey(data["survey"], len(segments), template_id)

        return cls(
            id=template_id,
            name=name,
            segments=segments,
            fade_in=fade_in,
            fade_out=fade_out,
            survey=survey,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "audioSequence": [segment.to_dict() for segment in self.segments],
            "fadeIn": self.fade_in,
            "fadeOut": self.fade_out,
        }
        if self.survey is not None:
            data["survey"] = self.survey.to_dict()
        return data


def _require_str(data: Mapping[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise TemplateError(f"{where}: '{key}' must be a non-empty string")
    return value


def _optional_str(data: Mapping[str, Any], key: str, where: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise TemplateError(f"{where}: '{key}' must be a non-empty string when set")
    return value


def _require_seconds(data: Mapping[str, Any], key: str, template_id: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TemplateError(f"Template '{template_id}': '{key}' must be a number of seconds")
    if value < 0:
        raise TemplateError(f"Template '{template_id}': '{key}' must not be negative")
    return float(value)


def _parse_segment(item: Any, index: int, template_id: str) -> Segment:
    where = f"Template '{template_id}' segment {index}"
    if not isinstance(item, Mapping):
        raise TemplateError(f"{where}: must be an object")

    file_url = _optional_str(item, "fileUrl", where)
    placeholder_key = _optional_str(item, "placeholderKey", where)
    if (file_url is None) == (placeholder_key is None):
        raise TemplateError(f"{where}: exactly one of fileUrl/placeholderKey must be set")

    visual_content = item.get("visualContent")
    if visual_content is not None and not isinstance(visual_content, Mapping):
        raise TemplateError(f"{where}: visualContent must be an object")

    return Segment(
        label=_require_str(item, "label", where),
        file_url=file_url,
        placeholder_key=placeholder_key,
        background_music=_optional_str(item, "backgroundMusic", where),
        visual_content=visual_content,
    )


def _parse_survey(raw: Any, segment_count: int, template_id: str) -> Survey:
    where = f"Template '{template_id}' survey"
    if not isinstance(raw, Mapping):
        raise TemplateError(f"{where}: must be an object")

    after_index = raw.get("afterIndex")
    if isinstance(after_index, bool) or not isinstance(after_index, int):
        raise TemplateError(f"{where}: afterIndex must be an integer")
    if not 0 <= after_index < segment_count:
        raise TemplateError(
            f"{where}: afterIndex {after_index} outside [0, {segment_count - 1}]"
        )

    options = raw.get("options")
    if not isinstance(options, list) or not all(isinstance(o, str) for o in options):
        raise TemplateError(f"{where}: options must be a list of strings")

    return Survey(
        after_index=after_index,
        question=_require_str(raw, "question", where),
        options=tuple(options),
    )


def load_template(path: str) -> Template:
    """
    Load and validate a template JSON file.

    Raises:
        TemplateError: If the file cannot be read or is invalid.
    """
    template_path = Path(path)
    try:
        with open(template_path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise TemplateError(f"Failed to load template from {template_path}: {e}")

    template = Template.from_dict(data)
    logger.info(f"Loaded template '{template.id}' ({len(template.segments)} segments)")
    return template


BUILTIN_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "podcast-template": {
        "id": "podcast-template",
        "name": "Podcast Episode",
        "audioSequence": [
            {
                "fileUrl": "https://audio-samples.github.io/samples/mp3/music/sample-4.mp3",
                "label": "Standard Intro Jingle",
            },
            {
                "placeholderKey": "main-content",
                "label": "Main Episode Content",
                "backgroundMusic": "https://audio-samples.github.io/samples/mp3/music/sample-3.mp3",
            },
            {
                "fileUrl": "https://audio-samples.github.io/samples/mp3/music/sample-2.mp3",
                "label": "Standard Outro Jingle",
            },
        ],
        "fadeIn": 2,
        "fadeOut": 3,
    },
    "story-template": {
        "id": "story-template",
        "name": "Audio Story",
        "audioSequence": [
            {
                "fileUrl": "https://audio-samples.github.io/samples/mp3/story-intro.mp3",
                "label": "Story Opening Theme",
            },
            {
                "backgroundMusic": "https://audio-samples.github.io/samples/mp3/loop-ambient.mp3",
                "placeholderKey": "story-intro",
                "label": "Story Introduction",
            },
            {
                "backgroundMusic": "https://audio-samples.github.io/samples/mp3/loop-ambient.mp3",
                "placeholderKey": "main-story",
                "label": "Main Story Content",
            },
            {
                "backgroundMusic": "https://audio-samples.github.io/samples/mp3/loop-ambient.mp3",
                "placeholderKey": "story-conclusion",
                "label": "Story Conclusion",
            },
            {
                "fileUrl": "https://audio-samples.github.io/samples/mp3/story-outro.mp3",
                "label": "Story Closing Theme",
            },
        ],
        "fadeIn": 1.5,
        "fadeOut": 2,
    },
}


def get_builtin_template(template_id: str) -> Template:
    """Return one of BUILTIN_TEMPLATES as a validated Template."""
    try:
        return Template.from_dict(BUILTIN_TEMPLATES[template_id])
    except KeyError:
        raise TemplateError(f"Unknown built-in template: {template_id}")

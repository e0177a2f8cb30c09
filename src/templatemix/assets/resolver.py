"""
Asset Resolver: map every segment of a template to a concrete source.

Pure lookup and validation, nothing is fetched here. A non-fixed segment
whose placeholder has no upload fails with MissingUploadError, so callers
learn about it before paying for any network or decode work.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from ..errors import MissingUploadError
from ..template import Template

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadBinding:
    """A user-supplied file bound to a placeholder key."""

    placeholder_key: str
    file_url: str


class UploadSet:
    """Uploads keyed by placeholder key; a later binding replaces an earlier one."""

    def __init__(self, bindings: Iterable[UploadBinding] = ()):
        self._urls: Dict[str, str] = {}
        for binding in bindings:
            self.bind(binding.placeholder_key, binding.file_url)

    @classmethod
    def from_list(cls, items: Iterable[Mapping[str, str]]) -> "UploadSet":
        """Build from `[{"placeholderKey": ..., "fileUrl": ...}]` documents."""
        return cls(
            UploadBinding(placeholder_key=item["placeholderKey"], file_url=item["fileUrl"])
            for item in items
        )

    def bind(self, placeholder_key: str, file_url: str) -> None:
        if placeholder_key in self._urls:
            logger.debug(f"Rebinding placeholder '{placeholder_key}' to {file_url}")
        self._urls[placeholder_key] = file_url

    def get(self, placeholder_key: str) -> Optional[str]:
        return self._urls.get(placeholder_key)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._urls.items())

    def __contains__(self, placeholder_key: str) -> bool:
        return placeholder_key in self._urls

    def __len__(self) -> int:
        return len(self._urls)


@dataclass(frozen=True)
class SourceMap:
    """
    Result of resolution.

    Attributes:
        foreground: Source key per segment (URL or placeholder key)
        background: Background URL per segment, or None
        locations: Source key -> location to fetch
    """

    foreground: Tuple[str, ...]
    background: Tuple[Optional[str], ...]
    locations: Mapping[str, str]


def missing_placeholders(template: Template, uploads: UploadSet) -> List[str]:
    """Placeholder keys of the template that have no upload yet."""
    return [key for key in template.placeholder_keys() if key not in uploads]


def resolve_sources(
    template: Template,
    uploads: UploadSet,
    include_unreferenced: bool = False,
) -> SourceMap:
    """
    Resolve every segment's foreground and background source.

    Args:
        template: Validated template
        uploads: Bound uploads
        include_unreferenced: Also list uploads the template never mentions

    Returns:
        SourceMap

    Raises:
        MissingUploadError: If a non-fixed segment has no bound upload
    """
    foreground: List[str] = []
    background: List[Optional[str]] = []
    locations: Dict[str, str] = {}

    for index, segment in enumerate(template.segments):
        if segment.is_fixed:
            locations[segment.file_url] = segment.file_url
        else:
            upload_url = uploads.get(segment.placeholder_key)
            if upload_url is None:
                logger.error(
                    f"Segment {index} ({segment.label}) needs an upload for "
                    f"'{segment.placeholder_key}'"
                )
                raise MissingUploadError(segment.placeholder_key)
            locations[segment.placeholder_key] = upload_url
        foreground.append(segment.source_key)

        if segment.background_music:
            locations[segment.background_music] = segment.background_music
        background.append(segment.background_music)

    if include_unreferenced:
        for placeholder_key, file_url in uploads.items():
            locations.setdefault(placeholder_key, file_url)

    logger.debug(f"Resolved {len(locations)} sources for template '{template.id}'")
    return SourceMap(
        foreground=tuple(foreground),
        background=tuple(background),
        locations=locations,
    )

"""
Error taxonomy shared by the offline and live paths.

The offline path lets every one of these propagate to the caller. The live
scheduler catches the per-segment ones, logs them and keeps going.
"""

from typing import Optional


class TemplateMixError(Exception):
    """Base class for every error raised by templatemix."""
    pass


class TemplateError(TemplateMixError, ValueError):
    """Raised when a template document fails validation."""
    pass


class MissingUploadError(TemplateMixError):
    """A segment without a fixed source has no upload bound to its placeholder."""

    def __init__(self, placeholder_key: str):
        self.placeholder_key = placeholder_key
        super().__init__(f"No upload bound for placeholder '{placeholder_key}'")


class DecodeError(TemplateMixError):
    """The decoder (or the fetch feeding it) failed on a source."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Failed to decode {source}: {reason}")


class FetchError(DecodeError):
    """Raw bytes for a source could not be retrieved."""
    pass


class AssetResolutionError(TemplateMixError):
    """A segment's asset is absent at compose time."""

    def __init__(self, segment_index: int, source_key: Optional[str]):
        self.segment_index = segment_index
        self.source_key = source_key
        super().__init__(
            f"Segment {segment_index} has no resolved asset for '{source_key}'"
        )


class RenderError(TemplateMixError):
    """The batch render step failed; no partial output is returned."""
    pass


class SchedulerStateError(TemplateMixError):
    """A live scheduler operation is not valid in the current state."""
    pass


class PlaybackError(TemplateMixError):
    """The live output graph could not be initialised."""
    pass

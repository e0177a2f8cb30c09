"""
Timeline Compositor: Template + resolved assets -> Mix Plan.

Segments are laid end to end (no overlap offline), each with a linear
fade-in/hold/fade-out envelope. Background music is tiled from the segment
start until it covers the segment; the last copy may run past the segment
end, where the envelope has already reached zero.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Tuple

import numpy as np

from ..assets.decoder import PCMAsset
from ..errors import AssetResolutionError
from ..template import Template

logger = logging.getLogger(__name__)

BACKGROUND_GAIN = 0.3


def fit_fades(fade_in: float, fade_out: float, duration: float) -> Tuple[float, float]:
    """
    Scale fades down proportionally when they do not fit in `duration`.

    Returns:
        (fade_in, fade_out) with fade_in + fade_out <= duration
    """
    total = fade_in + fade_out
    if total <= duration or total <= 0:
        return fade_in, fade_out
    scale = duration / total
    return fade_in * scale, fade_out * scale


def tile_background(start: float, duration: float, background_duration: float) -> List[float]:
    """Start times of the background copies needed to cover [start, start + duration]."""
    if background_duration <= 0:
        return []
    loop_count = math.ceil(duration / background_duration)
    return [start + i * background_duration for i in range(loop_count)]


@dataclass(frozen=True)
class Envelope:
    """
    Linear fade envelope of one segment, in absolute seconds.

    Gain is 0 at `start`, 1 from `start + fade_in` to
    `start + duration - fade_out`, 0 at `start + duration` and outside.
    Fades are expected to fit already (see fit_fades).
    """

    start: float
    duration: float
    fade_in: float
    fade_out: float

    @property
    def end(self) -> float:
        return self.start + self.duration

    @property
    def fade_in_end(self) -> float:
        return self.start + self.fade_in

    @property
    def fade_out_start(self) -> float:
        return self.end - self.fade_out

    def gains(self, times: np.ndarray) -> np.ndarray:
        """Gain at each absolute time in `times`."""
        relative = np.asarray(times, dtype=np.float64) - self.start
        rising = np.ones_like(relative)
        falling = np.ones_like(relative)
        if self.fade_in > 0:
            rising = np.clip(relative / self.fade_in, 0.0, 1.0)
        if self.fade_out > 0:
            falling = np.clip((self.duration - relative) / self.fade_out, 0.0, 1.0)
        inside = (relative >= 0) & (relative <= self.duration)
        return np.where(inside, np.minimum(rising, falling), 0.0)

    def gain_at(self, time: float) -> float:
        return float(self.gains(np.array([time]))[0])

    def automation(self) -> List[Tuple[str, float, float]]:
        """(ramp, value, time) events reproducing this envelope on a live gain."""
        return [
            ("set", 0.0, self.start),
            ("linear", 1.0, self.fade_in_end),
            ("set", 1.0, self.fade_out_start),
            ("linear", 0.0, self.end),
        ]

    def to_dict(self) -> Dict[str, float]:
        return {
            "start": self.start,
            "fade_in_end": self.fade_in_end,
            "fade_out_start": self.fade_out_start,
            "end": self.end,
        }


@dataclass(frozen=True)
class BackgroundPlacement:
    source_key: str
    start_seconds: float
    duration_seconds: float
    gain: float = BACKGROUND_GAIN


@dataclass(frozen=True)
class Placement:
    segment_index: int
    source_key: str
    start_seconds: float
    duration_seconds: float
    envelope: Envelope
    background_placements: Tuple[BackgroundPlacement, ...] = ()


@dataclass(frozen=True)
class MixPlan:
    """Renderer-ready schedule; total_duration is authoritative for output length."""

    template_id: str
    placements: Tuple[Placement, ...]
    total_duration: float
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "template_id": self.template_id,
            "total_duration": self.total_duration,
            "placements": [
                {
                    "segment_index": p.segment_index,
                    "source_key": p.source_key,
                    "start_seconds": p.start_seconds,
                    "duration_seconds": p.duration_seconds,
                    "envelope": p.envelope.to_dict(),
                    "background_placements": [
                        {
                            "source_key": b.source_key,
                            "start_seconds": b.start_seconds,
                            "duration_seconds": b.duration_seconds,
                            "gain": b.gain,
                        }
                        for b in p.background_placements
                    ],
                }
                for p in self.placements
            ],
            **dict(self.metadata),
        }


def compose(
    template: Template,
    assets: Mapping[str, PCMAsset],
    background_gain: float = BACKGROUND_GAIN,
) -> MixPlan:
    """
    Build the Mix Plan for a template.

    Args:
        template: Validated template
        assets: Decoded assets keyed by source key (URL or placeholder key)
        background_gain: Relative gain of background loops

    Returns:
        MixPlan

    Raises:
        AssetResolutionError: If any segment's foreground asset is missing
    """
    cursor = 0.0
    placements: List[Placement] = []

    for index, segment in enumerate(template.segments):
        asset = assets.get(segment.source_key)
        if asset is None:
            logger.error(f"No asset for segment {index} ({segment.label})")
            raise AssetResolutionError(index, segment.source_key)

        duration = asset.duration
        fade_in, fade_out = fit_fades(template.fade_in, template.fade_out, duration)
        if (fade_in, fade_out) != (template.fade_in, template.fade_out):
            logger.warning(
                f"Segment {index} ({segment.label}) is {duration:.2f}s; "
                f"fades scaled to {fade_in:.2f}s/{fade_out:.2f}s"
            )
        envelope = Envelope(start=cursor, duration=duration, fade_in=fade_in, fade_out=fade_out)

        backgrounds: List[BackgroundPlacement] = []
        if segment.background_music:
            background = assets.get(segment.background_music)
            if background is None:
                logger.warning(f"Background for segment {index} not available; playing without it")
            else:
                for loop_start in tile_background(cursor, duration, background.duration):
                    backgrounds.append(
                        BackgroundPlacement(
                            source_key=segment.background_music,
                            start_seconds=loop_start,
                            duration_seconds=background.duration,
                            gain=background_gain,
                        )
                    )

        placements.append(
            Placement(
                segment_index=index,
                source_key=segment.source_key,
                start_seconds=cursor,
                duration_seconds=duration,
                envelope=envelope,
                background_placements=tuple(backgrounds),
            )
        )
        cursor += duration

    logger.info(f"Composed {len(placements)} placements, {cursor:.2f}s total")
    return MixPlan(
        template_id=template.id,
        placements=tuple(placements),
        total_duration=cursor,
        metadata={"template_name": template.name},
    )

"""
Renderer: Mix Plan + assets -> one stereo float PCM buffer.

Single-pass batch computation. Each placement is summed into its own
segment bus (foreground plus attenuated background loops), multiplied by
the segment envelope and added into the output. Nothing is clamped or
normalised here; the WAV encoder clamps once.
"""

import logging
import math
from dataclasses import dataclass
from typing import Mapping, Optional

import numpy as np

from ..assets.decoder import PCMAsset
from ..errors import AssetResolutionError, RenderError
from .compositor import MixPlan, Placement

logger = logging.getLogger(__name__)

OUTPUT_CHANNELS = 2


@dataclass(frozen=True, eq=False)
class PCMBuffer:
    """
    Rendered program.

    Attributes:
        sample_rate: Frames per second
        samples: float64 array shaped (frames, 2), i.e. interleaved by frame
    """

    sample_rate: int
    samples: np.ndarray

    @property
    def channel_count(self) -> int:
        return self.samples.shape[1]

    @property
    def frame_count(self) -> int:
        return self.samples.shape[0]

    @property
    def duration(self) -> float:
        return self.frame_count / self.sample_rate

    @classmethod
    def silence(cls, sample_rate: int, frame_count: int) -> "PCMBuffer":
        return cls(sample_rate, np.zeros((frame_count, OUTPUT_CHANNELS), dtype=np.float64))


def frames_for(duration: float, sample_rate: int) -> int:
    """ceil(duration * rate), ignoring float noise from summed durations."""
    return max(0, math.ceil(duration * sample_rate - 1e-6))


def _as_stereo(asset: PCMAsset) -> np.ndarray:
    """(frames, 2) view of an asset: mono duplicated, extra channels dropped."""
    if asset.channel_count == 1:
        return np.repeat(asset.samples.T, OUTPUT_CHANNELS, axis=1)
    return asset.samples[:OUTPUT_CHANNELS].T


def _lookup(assets: Mapping[str, PCMAsset], key: str, placement: Placement) -> PCMAsset:
    asset = assets.get(key)
    if asset is None:
        raise AssetResolutionError(placement.segment_index, key)
    return asset


def _render_placement(
    out: np.ndarray,
    placement: Placement,
    assets: Mapping[str, PCMAsset],
    sample_rate: int,
) -> None:
    foreground = _lookup(assets, placement.source_key, placement)
    bus = _as_stereo(foreground).astype(np.float64)
    window = bus.shape[0]

    for background in placement.background_placements:
        loop = _as_stereo(_lookup(assets, background.source_key, placement))
        offset = int(round((background.start_seconds - placement.start_seconds) * sample_rate))
        if offset >= window:
            continue
        count = min(loop.shape[0], window - offset)
        bus[offset:offset + count] += background.gain * loop[:count]

    times = placement.start_seconds + np.arange(window, dtype=np.float64) / sample_rate
    bus *= placement.envelope.gains(times)[:, np.newaxis]

    start_frame = int(round(placement.start_seconds * sample_rate))
    count = min(window, out.shape[0] - start_frame)
    if count > 0:
        out[start_frame:start_frame + count] += bus[:count]


def render(
    plan: MixPlan,
    assets: Mapping[str, PCMAsset],
    sample_rate: Optional[int] = None,
) -> PCMBuffer:
    """
    Render a Mix Plan.

    Args:
        plan: Output of compose()
        assets: Decoded assets keyed by source key
        sample_rate: Output rate; defaults to the first placement's asset rate

    Returns:
        PCMBuffer of ceil(total_duration * rate) frames, 2 channels

    Raises:
        RenderError: On an invalid plan, mismatched sample rates or
                     resource exhaustion
        AssetResolutionError: If the plan names an asset that is absent
    """
    if not plan.placements:
        raise RenderError(f"Plan for '{plan.template_id}' has no placements")

    if sample_rate is None:
        first = _lookup(assets, plan.placements[0].source_key, plan.placements[0])
        sample_rate = first.sample_rate

    used_keys = {p.source_key for p in plan.placements}
    used_keys.update(b.source_key for p in plan.placements for b in p.background_placements)
    for key in sorted(used_keys):
        asset = assets.get(key)
        if asset is not None and asset.sample_rate != sample_rate:
            raise RenderError(
                f"Asset '{key}' is {asset.sample_rate} Hz but output is {sample_rate} Hz; "
                f"resampling is not supported"
            )

    frame_count = frames_for(plan.total_duration, sample_rate)
    logger.info(f"Rendering {len(plan.placements)} placements: {frame_count} frames @ {sample_rate} Hz")

    try:
        out = np.zeros((frame_count, OUTPUT_CHANNELS), dtype=np.float64)
        for placement in plan.placements:
            _render_placement(out, placement, assets, sample_rate)
    except MemoryError:
        raise RenderError(f"Out of memory rendering {frame_count} frames")
    except ValueError as e:
        raise RenderError(f"Invalid plan for '{plan.template_id}': {e}")

    return PCMBuffer(sample_rate=sample_rate, samples=out)

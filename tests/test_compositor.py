"""
Unit tests for the timeline compositor.

Tests placement offsets, envelopes, background tiling and fade clamping.
"""

import json

import numpy as np
import pytest

from templatemix.errors import AssetResolutionError
from templatemix.render.compositor import (
    BACKGROUND_GAIN,
    Envelope,
    compose,
    fit_fades,
    tile_background,
)
from templatemix.template import Template


def _template(segments, fade_in=1.0, fade_out=2.0):
    return Template.from_dict({
        "id": "t",
        "name": "T",
        "audioSequence": segments,
        "fadeIn": fade_in,
        "fadeOut": fade_out,
    })


@pytest.fixture
def two_fixed(make_asset):
    """Two fixed segments of 4.0s and 6.0s."""
    template = _template([
        {"fileUrl": "a.wav", "label": "A"},
        {"fileUrl": "b.wav", "label": "B"},
    ])
    assets = {"a.wav": make_asset(4.0), "b.wav": make_asset(6.0)}
    return template, assets


class TestCompose:
    """Test placement layout."""

    def test_two_segment_scenario(self, two_fixed):
        """4s + 6s segments are laid end to end for 10s total."""
        template, assets = two_fixed
        plan = compose(template, assets)

        assert [(p.start_seconds, p.duration_seconds) for p in plan.placements] == [
            (0.0, 4.0),
            (4.0, 6.0),
        ]
        assert plan.total_duration == pytest.approx(10.0)

    def test_total_is_sum_of_durations(self, make_asset):
        """Offline path has no overlap."""
        durations = [1.5, 2.25, 0.75, 3.0]
        template = _template([{"fileUrl": f"{i}.wav", "label": str(i)} for i in range(4)], 0.1, 0.1)
        assets = {f"{i}.wav": make_asset(d) for i, d in enumerate(durations)}

        plan = compose(template, assets)

        assert plan.total_duration == pytest.approx(sum(durations))

    def test_placeholder_segment_uses_upload_key(self, make_asset):
        """Placeholder segments read the asset stored under their key."""
        template = _template([{"placeholderKey": "voice", "label": "V"}])

        plan = compose(template, {"voice": make_asset(3.0)})

        assert plan.placements[0].source_key == "voice"

    def test_missing_asset_fails(self, two_fixed):
        """Missing foreground asset aborts the whole composition."""
        template, assets = two_fixed
        del assets["b.wav"]

        with pytest.raises(AssetResolutionError) as exc_info:
            compose(template, assets)

        assert exc_info.value.segment_index == 1

    def test_deterministic(self, two_fixed):
        """Same inputs give the same plan."""
        template, assets = two_fixed

        assert compose(template, assets) == compose(template, assets)

    def test_plan_serializable(self, two_fixed):
        """to_dict output is JSON-serializable."""
        template, assets = two_fixed
        data = json.loads(json.dumps(compose(template, assets).to_dict()))

        assert data["total_duration"] == pytest.approx(10.0)
        assert data["placements"][1]["envelope"]["fade_out_start"] == pytest.approx(8.0)


class TestEnvelope:
    """Test envelope shape."""

    def test_breakpoints(self):
        """0 at start, 1 after fade-in, 1 before fade-out, 0 at end."""
        env = Envelope(start=4.0, duration=6.0, fade_in=1.0, fade_out=2.0)

        assert env.gain_at(4.0) == 0.0
        assert env.gain_at(5.0) == pytest.approx(1.0)
        assert env.gain_at(8.0) == pytest.approx(1.0)
        assert env.gain_at(10.0) == 0.0

    def test_linear_ramps(self):
        """Gain is linear inside the ramps."""
        env = Envelope(start=0.0, duration=6.0, fade_in=1.0, fade_out=2.0)

        assert env.gain_at(0.5) == pytest.approx(0.5)
        assert env.gain_at(7.0 - 2.0) == pytest.approx(0.5)
        assert env.gain_at(5.5) == pytest.approx(0.25)

    def test_zero_outside(self):
        """Gain is 0 before the start and after the end."""
        env = Envelope(start=1.0, duration=2.0, fade_in=0.5, fade_out=0.5)

        gains = env.gains(np.array([0.0, 0.99, 3.01, 10.0]))

        assert np.all(gains == 0.0)

    def test_automation_events(self):
        """Live automation reproduces the same breakpoints."""
        env = Envelope(start=10.0, duration=4.0, fade_in=1.0, fade_out=2.0)

        assert env.automation() == [
            ("set", 0.0, 10.0),
            ("linear", 1.0, 11.0),
            ("set", 1.0, 12.0),
            ("linear", 0.0, 14.0),
        ]


class TestFitFades:
    """Test the fade clamp policy."""

    def test_fitting_fades_unchanged(self):
        """Fades that fit are returned as is."""
        assert fit_fades(1.0, 2.0, 4.0) == (1.0, 2.0)

    def test_overlong_fades_scaled(self):
        """Fades longer than the segment scale proportionally."""
        fade_in, fade_out = fit_fades(2.0, 3.0, 2.5)

        assert fade_in == pytest.approx(1.0)
        assert fade_out == pytest.approx(1.5)

    def test_short_segment_envelope(self, make_asset):
        """A short segment never produces crossed ramps."""
        template = _template([{"fileUrl": "a.wav", "label": "A"}], fade_in=2.0, fade_out=2.0)

        env = compose(template, {"a.wav": make_asset(1.0)}).placements[0].envelope

        assert env.fade_in + env.fade_out == pytest.approx(1.0)
        assert env.gain_at(0.5) == pytest.approx(1.0)


class TestBackgroundTiling:
    """Test background loop placements."""

    def test_loop_count_is_ceiling(self):
        """ceil(10 / 3) = 4 copies."""
        assert tile_background(0.0, 10.0, 3.0) == [0.0, 3.0, 6.0, 9.0]

    def test_background_placements(self, make_asset):
        """Background loops start at the segment start, last one overruns."""
        template = _template([
            {"fileUrl": "a.wav", "label": "A"},
            {"fileUrl": "b.wav", "backgroundMusic": "bed.wav", "label": "B"},
        ])
        assets = {
            "a.wav": make_asset(4.0),
            "b.wav": make_asset(6.0),
            "bed.wav": make_asset(2.5),
        }

        placement = compose(template, assets).placements[1]

        starts = [b.start_seconds for b in placement.background_placements]
        assert starts == pytest.approx([4.0, 6.5, 9.0])
        assert starts[-1] + 2.5 > placement.start_seconds + placement.duration_seconds
        assert all(b.gain == BACKGROUND_GAIN for b in placement.background_placements)

    def test_missing_background_skipped(self, make_asset):
        """An unavailable background leaves the segment without one."""
        template = _template([{"fileUrl": "a.wav", "backgroundMusic": "bed.wav", "label": "A"}])

        plan = compose(template, {"a.wav": make_asset(4.0)})

        assert plan.placements[0].background_placements == ()

    def test_background_gain_configurable(self, make_asset):
        """Background gain can be overridden."""
        template = _template([{"fileUrl": "a.wav", "backgroundMusic": "bed.wav", "label": "A"}])
        assets = {"a.wav": make_asset(4.0), "bed.wav": make_asset(4.0)}

        plan = compose(template, assets, background_gain=0.5)

        assert plan.placements[0].background_placements[0].gain == 0.5

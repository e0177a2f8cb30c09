"""Shared fixtures: synthetic PCM assets and a loader that never touches I/O."""

import io
import wave

import numpy as np
import pytest

from templatemix.assets.decoder import Decoder, PCMAsset
from templatemix.assets.loader import AssetLoader
from templatemix.errors import DecodeError


class FakeDecoder(Decoder):
    """Returns pre-built assets by source name and records every call."""

    def __init__(self, assets):
        self.assets = dict(assets)
        self.calls = []

    def decode(self, data, source="<bytes>"):
        self.calls.append(source)
        if source not in self.assets:
            raise DecodeError(source, "unknown test source")
        return self.assets[source]


def _make_asset(duration, sample_rate=44100, channels=2, value=0.5):
    frames = int(round(duration * sample_rate))
    return PCMAsset.from_channels(
        sample_rate, np.full((channels, frames), value, dtype=np.float32)
    )


def _wav_bytes(duration, sample_rate=44100, channels=2, value=0.25):
    frames = int(round(duration * sample_rate))
    samples = np.full(frames * channels, int(value * 32767), dtype="<i2")
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(samples.tobytes())
    return buf.getvalue()


@pytest.fixture
def make_asset():
    """Factory: make_asset(duration, sample_rate=44100, channels=2, value=0.5)."""
    return _make_asset


@pytest.fixture
def wav_bytes():
    """Factory: 16-bit PCM WAV bytes filled with a constant value."""
    return _wav_bytes


@pytest.fixture
def make_loader():
    """Factory: make_loader(assets_by_location) -> (AssetLoader, FakeDecoder)."""

    def factory(assets):
        decoder = FakeDecoder(assets)
        loader = AssetLoader(decoder, fetcher=lambda location: location.encode())
        return loader, decoder

    return factory

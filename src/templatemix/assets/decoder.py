"""
Decoders: turn encoded bytes into PCM assets.

The rest of the package only depends on the Decoder interface. Two stock
implementations are provided:
- WavDecoder: integer PCM WAV via the stdlib wave module
- FFmpegDecoder: anything ffmpeg understands, piped through f32le

StandardDecoder sniffs the RIFF header and picks between them.
"""

import io
import logging
import subprocess
import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..errors import DecodeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class PCMAsset:
    """
    Decoded audio, never mutated after construction.

    Attributes:
        sample_rate: Frames per second
        samples: float32 array shaped (channels, frames), nominal range [-1, 1]
    """

    sample_rate: int
    samples: np.ndarray

    @property
    def channel_count(self) -> int:
        return self.samples.shape[0]

    @property
    def frame_count(self) -> int:
        return self.samples.shape[1]

    @property
    def duration(self) -> float:
        return self.frame_count / self.sample_rate

    @classmethod
    def from_channels(cls, sample_rate: int, channels) -> "PCMAsset":
        """Build from a sequence of per-channel sample sequences."""
        samples = np.array(channels, dtype=np.float32, ndmin=2)
        samples.setflags(write=False)
        return cls(sample_rate=sample_rate, samples=samples)


class Decoder(ABC):
    """Capability: encoded bytes -> PCMAsset."""

    @abstractmethod
    def decode(self, data: bytes, source: str = "<bytes>") -> PCMAsset:
        """
        Decode one source.

        Args:
            data: Encoded audio
            source: Name used in log and error messages

        Raises:
            DecodeError: If the bytes cannot be decoded
        """


class WavDecoder(Decoder):
    """Integer PCM WAV (8/16/24/32-bit) decoder."""

    def decode(self, data: bytes, source: str = "<bytes>") -> PCMAsset:
        try:
            with wave.open(io.BytesIO(data), "rb") as wav:
                sample_rate = wav.getframerate()
                channels = wav.getnchannels()
                width = wav.getsampwidth()
                raw = wav.readframes(wav.getnframes())
        except (wave.Error, EOFError) as e:
            raise DecodeError(source, f"invalid WAV data: {e}")

        if width == 1:
            ints = np.frombuffer(raw, dtype=np.uint8).astype(np.float32) - 128.0
            scale = 128.0
        elif width == 2:
            ints = np.frombuffer(raw, dtype="<i2").astype(np.float32)
            scale = 32768.0
        elif width == 3:
            # Sign-extend packed 24-bit little-endian samples into int32
            packed = np.frombuffer(raw, dtype=np.uint8).reshape(-1, 3)
            widened = np.zeros((packed.shape[0], 4), dtype=np.uint8)
            widened[:, 1:] = packed
            ints = (widened.view("<i4").reshape(-1) >> 8).astype(np.float32)
            scale = 8388608.0
        elif width == 4:
            ints = np.frombuffer(raw, dtype="<i4").astype(np.float32)
            scale = 2147483648.0
        else:
            raise DecodeError(source, f"unsupported sample width {width}")

        frames = ints.reshape(-1, channels).T / scale
        logger.debug(f"Decoded WAV {source}: {channels}ch @ {sample_rate} Hz, {frames.shape[1]} frames")
        return PCMAsset.from_channels(sample_rate, frames)


class FFmpegDecoder(Decoder):
    """Decode any ffmpeg-supported format to stereo float PCM at a fixed rate."""

    CHANNELS = 2

    def __init__(self, sample_rate: int = 44100, binary: str = "ffmpeg", timeout_seconds: float = 60):
        self.sample_rate = sample_rate
        self.binary = binary
        self.timeout_seconds = timeout_seconds

    def decode(self, data: bytes, source: str = "<bytes>") -> PCMAsset:
        cmd = [
            self.binary,
            "-i", "pipe:0",
            "-f", "f32le",
            "-ac", str(self.CHANNELS),
            "-ar", str(self.sample_rate),
            "-loglevel", "error",
            "pipe:1",
        ]
        try:
            result = subprocess.run(
                cmd,
                input=data,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError:
            raise DecodeError(source, f"decoder binary not found: {self.binary}")
        except subprocess.TimeoutExpired:
            raise DecodeError(source, f"ffmpeg timed out after {self.timeout_seconds}s")

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="ignore").strip()
            raise DecodeError(source, f"ffmpeg exited with {result.returncode}: {stderr or '(no stderr)'}")

        usable = len(result.stdout) - len(result.stdout) % (4 * self.CHANNELS)
        if usable == 0:
            raise DecodeError(source, "ffmpeg produced no audio")

        interleaved = np.frombuffer(result.stdout[:usable], dtype="<f4")
        frames = interleaved.reshape(-1, self.CHANNELS).T
        logger.debug(f"Decoded {source} with ffmpeg: {frames.shape[1]} frames @ {self.sample_rate} Hz")
        return PCMAsset.from_channels(self.sample_rate, frames)


class StandardDecoder(Decoder):
    """WAV through WavDecoder when possible, everything else through ffmpeg."""

    def __init__(self, ffmpeg: Optional[FFmpegDecoder] = None):
        self.wav = WavDecoder()
        self.ffmpeg = ffmpeg or FFmpegDecoder()

    def decode(self, data: bytes, source: str = "<bytes>") -> PCMAsset:
        if data[:4] == b"RIFF" and data[8:12] == b"WAVE":
            try:
                return self.wav.decode(data, source)
            except DecodeError as e:
                # Float or extensible WAV; ffmpeg handles those
                logger.debug(f"{e}; retrying with ffmpeg")
        return self.ffmpeg.decode(data, source)

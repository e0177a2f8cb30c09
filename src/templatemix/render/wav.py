"""
Container Encoder: PCM buffer -> RIFF/WAVE 16-bit PCM bytes.

Layout (little-endian):
    0  "RIFF"    4  36 + data bytes   8  "WAVE"
    12 "fmt "    16 16                20 1 (PCM)      22 channels
    24 rate      28 rate * block      32 block align  34 16 bits
    36 "data"    40 data bytes        44 interleaved int16 samples

This is the only place sample values are clamped.
"""

import logging
import struct
from pathlib import Path
from typing import Optional

import numpy as np
from mutagen.id3 import TALB, TCON, TDRC, TIT2
from mutagen.wave import WAVE

from .renderer import PCMBuffer

logger = logging.getLogger(__name__)

HEADER_SIZE = 44
BITS_PER_SAMPLE = 16
BYTES_PER_SAMPLE = BITS_PER_SAMPLE // 8
PCM_FORMAT_TAG = 1


def wav_header(sample_rate: int, channels: int, frame_count: int) -> bytes:
    block_align = channels * BYTES_PER_SAMPLE
    data_bytes = frame_count * block_align
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_bytes,
        b"WAVE",
        b"fmt ",
        16,
        PCM_FORMAT_TAG,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        BITS_PER_SAMPLE,
        b"data",
        data_bytes,
    )


def to_int16(samples: np.ndarray) -> np.ndarray:
    """clamp(s, -1, 1) scaled by 32768 below zero and 32767 above, truncated."""
    clamped = np.clip(samples, -1.0, 1.0)
    scaled = np.where(clamped < 0, clamped * 32768.0, clamped * 32767.0)
    return np.trunc(scaled).astype("<i2")


def encode_wav(buffer: PCMBuffer) -> bytes:
    """Serialize a PCM buffer to WAV bytes."""
    header = wav_header(buffer.sample_rate, buffer.channel_count, buffer.frame_count)
    data = to_int16(buffer.samples).tobytes(order="C")
    return header + data


def write_wav(path: str, buffer: PCMBuffer) -> Path:
    """Encode and write a buffer; returns the output path."""
    output = Path(path)
    output.write_bytes(encode_wav(buffer))
    logger.debug(f"Wrote {output} ({HEADER_SIZE + buffer.frame_count * buffer.channel_count * 2} bytes)")
    return output


def tag_wav(
    path: str,
    title: str,
    album: Optional[str] = None,
    date: Optional[str] = None,
    genre: str = "Spoken Word",
) -> bool:
    """
    Add an ID3 chunk to a WAV file.

    This appends a chunk and grows the RIFF size, so tagged files are no
    longer the bare 44-byte-header layout.

    Returns:
        True if tags were written, False otherwise
    """
    try:
        audio = WAVE(path)
        if audio.tags is None:
            audio.add_tags()
        audio.tags.add(TIT2(encoding=3, text=[title]))
        if album:
            audio.tags.add(TALB(encoding=3, text=[album]))
        if date:
            audio.tags.add(TDRC(encoding=3, text=[date]))
        audio.tags.add(TCON(encoding=3, text=[genre]))
        audio.save()
    except Exception as e:
        logger.warning(f"Failed to write ID3 tags to {path}: {e}")
        return False

    logger.debug(f"Added ID3 metadata to {path}")
    return True

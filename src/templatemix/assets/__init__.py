"""
Asset Module: resolve template sources, fetch them and decode to PCM.

- resolver: placeholder/upload binding, fail-fast on missing uploads
- decoder: Decoder capability plus WAV and ffmpeg implementations
- loader: parallel fetch + decode with a per-location cache
"""

__all__ = ["resolver", "decoder", "loader"]

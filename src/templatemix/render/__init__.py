"""
Render Module: offline composition and WAV output.

- compositor: Template + assets -> Mix Plan (offsets, envelopes, background tiling)
- renderer: Mix Plan -> stereo float PCM buffer, deterministic single pass
- wav: 16-bit PCM RIFF/WAVE encoder, the only place samples are clamped
- engine: resolve -> decode -> compose -> render -> encode orchestration
"""

__all__ = ["compositor", "renderer", "wav", "engine"]

"""
Live Module: real-time playback of a template.

- graph: Clock and AudioGraph capabilities, VirtualClock/AsyncioClock, SimulatedGraph
- scheduler: session-versioned crossfade scheduler with survey gating
"""

__all__ = ["graph", "scheduler"]

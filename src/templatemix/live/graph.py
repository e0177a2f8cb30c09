"""
Capabilities used by the live scheduler: a clock and an audio output graph.

The scheduler never touches real timers or audio devices directly. It is
given a Clock (deferred callbacks) and an AudioGraph (sources, gains,
timed gain automation). SimulatedGraph records every call and reports
natural end-of-source events through the clock, which makes the whole
scheduler runnable in virtual time.
"""

import asyncio
import heapq
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..assets.decoder import PCMAsset
from ..errors import PlaybackError

logger = logging.getLogger(__name__)

RAMP_TYPES = ("set", "linear")


class Clock(ABC):
    """Monotonic time source with deferred callbacks."""

    @abstractmethod
    def now(self) -> float:
        """Current time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]):
        """Run `callback` after `delay` seconds; returns a handle with cancel()."""


class TimerHandle:
    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualClock(Clock):
    """Logical clock: time only moves when advance() or run() is called."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: List[Tuple[float, int, TimerHandle]] = []
        self._counter = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self._now + max(0.0, delay), callback)
        heapq.heappush(self._queue, (handle.when, next(self._counter), handle))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle in self._queue if not handle.cancelled)

    def advance(self, seconds: float) -> None:
        """Move time forward, firing every due callback in order."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            self._now = max(self._now, when)
            if not handle.cancelled:
                handle.callback()
        self._now = target

    def run(self, max_steps: int = 100000) -> None:
        """Fire callbacks until none are pending."""
        steps = 0
        while self._queue:
            when, _, handle = heapq.heappop(self._queue)
            self._now = max(self._now, when)
            if not handle.cancelled:
                handle.callback()
            steps += 1
            if steps >= max_steps:
                raise RuntimeError(f"VirtualClock.run exceeded {max_steps} callbacks")


class AsyncioClock(Clock):
    """Real-time clock on an asyncio event loop (single-threaded, cooperative)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.loop = loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(max(0.0, delay), callback)


@dataclass(eq=False)
class Node:
    """Handle to a source or gain node of an output graph."""

    node_id: int
    kind: str
    asset: Optional[PCMAsset] = None
    value: float = 1.0
    automation: List[Tuple[str, float, float]] = field(default_factory=list)


class AudioGraph(ABC):
    """Output graph capability (sources, gains, connections, timed gain ramps)."""

    @abstractmethod
    def open(self) -> None:
        """Acquire/resume the output device. Raises PlaybackError on failure."""

    @property
    @abstractmethod
    def current_time(self) -> float:
        """Graph time in seconds, the reference for start() and schedule_gain()."""

    @abstractmethod
    def create_source(self, asset: PCMAsset) -> Node:
        pass

    @abstractmethod
    def create_gain(self, value: float = 1.0) -> Node:
        pass

    @abstractmethod
    def connect(self, node: Node, destination: Optional[Node] = None) -> None:
        """Connect `node` into `destination`, or into the output when None."""

    @abstractmethod
    def disconnect(self, node: Node) -> None:
        pass

    @abstractmethod
    def schedule_gain(self, gain: Node, ramp: str, value: float, time: float) -> None:
        """`set` jumps to value at time; `linear` ramps from the previous event."""

    @abstractmethod
    def start(self, node: Node, when: Optional[float] = None,
              on_ended: Optional[Callable[[], None]] = None) -> None:
        pass

    @abstractmethod
    def stop(self, node: Node) -> None:
        pass


class SimulatedGraph(AudioGraph):
    """
    Graph that produces no sound.

    Every call is appended to `calls`; a started source reports its natural
    end through the clock once its asset's duration has elapsed.
    """

    def __init__(self, clock: Clock, fail_open: bool = False):
        self.clock = clock
        self.fail_open = fail_open
        self.is_open = False
        self.calls: List[Tuple[str, Any]] = []
        self.edges: Dict[int, Optional[int]] = {}
        self.playing: Dict[int, Node] = {}
        self._end_timers: Dict[int, Any] = {}
        self._ids = itertools.count(1)

    def open(self) -> None:
        if self.fail_open:
            raise PlaybackError("Simulated output device unavailable")
        if not self.is_open:
            self.is_open = True
            self.calls.append(("open", None))

    @property
    def current_time(self) -> float:
        return self.clock.now()

    def create_source(self, asset: PCMAsset) -> Node:
        node = Node(next(self._ids), "source", asset=asset)
        self.calls.append(("create_source", node.node_id))
        return node

    def create_gain(self, value: float = 1.0) -> Node:
        node = Node(next(self._ids), "gain", value=value)
        self.calls.append(("create_gain", (node.node_id, value)))
        return node

    def connect(self, node: Node, destination: Optional[Node] = None) -> None:
        target = destination.node_id if destination is not None else None
        self.edges[node.node_id] = target
        self.calls.append(("connect", (node.node_id, target)))

    def disconnect(self, node: Node) -> None:
        self.edges.pop(node.node_id, None)
        self.calls.append(("disconnect", node.node_id))

    def schedule_gain(self, gain: Node, ramp: str, value: float, time: float) -> None:
        if ramp not in RAMP_TYPES:
            raise ValueError(f"Unknown ramp type: {ramp}")
        gain.automation.append((ramp, value, time))
        self.calls.append(("schedule_gain", (gain.node_id, ramp, value, time)))

    def start(self, node: Node, when: Optional[float] = None,
              on_ended: Optional[Callable[[], None]] = None) -> None:
        now = self.clock.now()
        when = now if when is None else when
        self.playing[node.node_id] = node
        self.calls.append(("start", (node.node_id, when)))

        def _ended():
            self._end_timers.pop(node.node_id, None)
            self.playing.pop(node.node_id, None)
            if on_ended is not None:
                on_ended()

        end_time = when + node.asset.duration
        self._end_timers[node.node_id] = self.clock.call_later(end_time - now, _ended)

    def stop(self, node: Node) -> None:
        timer = self._end_timers.pop(node.node_id, None)
        if timer is not None:
            timer.cancel()
        self.playing.pop(node.node_id, None)
        self.calls.append(("stop", node.node_id))

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)

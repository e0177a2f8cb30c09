"""
Live Scheduler: real-time playback of a template with crossfades and a
survey pause.

Single-threaded and timer driven. Every deferred continuation (crossfade,
natural end, retry after a missing asset) captures the session id and the
segment index it was armed for and does nothing if either has changed by
the time it fires. stop(), skip() and play() all start a new session, so a
continuation armed before them can never resurrect an old sequence.

State transitions go through one table (TRANSITIONS) so the interactions
between crossfades, survey gates, skips and stops stay auditable:

    IDLE -> LOADING -> READY -> PLAYING <-> CROSSFADE_PENDING
                                   |               |
                                   +-> SURVEY_WAIT <+
                                   +-> STOPPED
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..assets.decoder import PCMAsset
from ..assets.loader import AssetLoader
from ..assets.resolver import UploadSet, resolve_sources
from ..config import Config
from ..errors import PlaybackError, SchedulerStateError
from ..render.compositor import BACKGROUND_GAIN, Envelope, fit_fades, tile_background
from ..template import Segment, Survey, Template
from .graph import AudioGraph, Clock, Node

logger = logging.getLogger(__name__)


class PlayerState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    PLAYING = "playing"
    CROSSFADE_PENDING = "crossfade_pending"
    SURVEY_WAIT = "survey_wait"
    STOPPED = "stopped"


TRANSITIONS = {
    PlayerState.IDLE: {PlayerState.LOADING},
    PlayerState.LOADING: {PlayerState.READY, PlayerState.IDLE, PlayerState.STOPPED},
    PlayerState.READY: {PlayerState.LOADING, PlayerState.PLAYING, PlayerState.STOPPED},
    PlayerState.PLAYING: {
        PlayerState.PLAYING,
        PlayerState.CROSSFADE_PENDING,
        PlayerState.SURVEY_WAIT,
        PlayerState.STOPPED,
    },
    PlayerState.CROSSFADE_PENDING: {
        PlayerState.PLAYING,
        PlayerState.SURVEY_WAIT,
        PlayerState.STOPPED,
    },
    PlayerState.SURVEY_WAIT: {PlayerState.PLAYING, PlayerState.STOPPED},
    PlayerState.STOPPED: {PlayerState.LOADING, PlayerState.PLAYING},
}

ACTIVE_STATES = (PlayerState.PLAYING, PlayerState.CROSSFADE_PENDING, PlayerState.SURVEY_WAIT)


@dataclass(frozen=True)
class SurveyResponse:
    question: str
    answer: str
    timestamp: int  # epoch milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return {"question": self.question, "answer": self.answer, "timestamp": self.timestamp}


@dataclass(frozen=True)
class PlayerSnapshot:
    """What the UI layer observes after every change."""

    state: PlayerState
    session: int
    current_index: int
    is_playing: bool
    survey_pending: bool
    survey_question: Optional[str] = None
    survey_options: Tuple[str, ...] = ()


@dataclass(eq=False)
class _Voice:
    """Output nodes sounding for one segment of one session."""

    session: int
    index: int
    source: Node
    gain: Node
    background_gain: Optional[Node] = None
    background_sources: List[Node] = field(default_factory=list)


class LiveScheduler:
    """Session-versioned playback controller for one template."""

    def __init__(
        self,
        template: Template,
        uploads: UploadSet,
        graph: AudioGraph,
        clock: Clock,
        loader: AssetLoader,
        config: Optional[Config] = None,
        survey_sink: Optional[Callable[[SurveyResponse], None]] = None,
    ):
        """
        Args:
            template: Template to play
            uploads: Uploads bound to the template's placeholders
            graph: Output graph capability
            clock: Timer capability; must share a time base with the graph
            loader: Asset loader (its cache is shared across sessions)
            config: Configuration; defaults to Config.defaults()
            survey_sink: Receives every SurveyResponse
        """
        config = config or Config.defaults()
        self.template = template
        self.uploads = uploads
        self.graph = graph
        self.clock = clock
        self.loader = loader
        self.survey_sink = survey_sink
        self.background_gain = config.get("render", "background_gain", BACKGROUND_GAIN)
        self.missing_asset_delay = config.get("live", "missing_asset_delay_seconds", 0.1)

        self._state = PlayerState.IDLE
        self._session = 0
        self._index = -1
        self._loaded = False
        self._assets: Dict[str, PCMAsset] = {}
        self._voices: List[_Voice] = []
        self._timers: List[Any] = []
        self._logs = deque(maxlen=config.get("live", "log_history", 100))
        self._listeners: List[Callable[[PlayerSnapshot], None]] = []
        self._log_listeners: List[Callable[[str], None]] = []

    # ==================== OBSERVABLE STATE ====================

    @property
    def state(self) -> PlayerState:
        return self._state

    @property
    def session(self) -> int:
        return self._session

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def is_playing(self) -> bool:
        """True while a session is live, including while a survey is pending."""
        return self._state in ACTIVE_STATES

    @property
    def survey_pending(self) -> bool:
        return self._state is PlayerState.SURVEY_WAIT

    @property
    def survey(self) -> Optional[Survey]:
        """The pending survey, if any."""
        return self.template.survey if self.survey_pending else None

    @property
    def active_voices(self) -> int:
        return len(self._voices)

    @property
    def logs(self) -> List[str]:
        return list(self._logs)

    def clear_logs(self) -> None:
        self._logs.clear()

    def snapshot(self) -> PlayerSnapshot:
        survey = self.survey
        return PlayerSnapshot(
            state=self._state,
            session=self._session,
            current_index=self._index,
            is_playing=self.is_playing,
            survey_pending=survey is not None,
            survey_question=survey.question if survey else None,
            survey_options=survey.options if survey else (),
        )

    def subscribe(self, listener: Callable[[PlayerSnapshot], None]) -> Callable[[], None]:
        """Register a snapshot listener; returns a function that unregisters it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def subscribe_log(self, listener: Callable[[str], None]) -> Callable[[], None]:
        self._log_listeners.append(listener)
        return lambda: self._log_listeners.remove(listener)

    def _emit(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    def _log(self, message: str, level: int = logging.INFO) -> None:
        line = f"[{datetime.now().strftime('%H:%M:%S.%f')[:-3]}] {message}"
        self._logs.append(line)
        logger.log(level, message)
        for listener in list(self._log_listeners):
            listener(line)

    def _transition(self, new_state: PlayerState) -> None:
        if new_state not in TRANSITIONS[self._state]:
            raise SchedulerStateError(
                f"Invalid transition {self._state.value} -> {new_state.value}"
            )
        self._state = new_state
        self._emit()

    # ==================== OPERATIONS ====================

    def load(self) -> None:
        """
        Resolve and decode every asset the template references plus every
        known upload. Decode failures are logged; the affected segments are
        skipped at play time. Repeated calls reuse already decoded assets.

        Raises:
            MissingUploadError: If a placeholder has no upload
            SchedulerStateError: If a session is active
        """
        if self.is_playing:
            raise SchedulerStateError("Cannot load while a session is active")

        self._transition(PlayerState.LOADING)
        self._log("Loading audio files...")
        try:
            sources = resolve_sources(self.template, self.uploads, include_unreferenced=True)
            assets, failures = self.loader.load(sources.locations, strict=False)
            for key, error in failures.items():
                self._log(f"Error loading {key}: {error.reason}", logging.WARNING)

            self._assets = assets
            self._loaded = True
            self._log(f"Loaded {len(assets)} of {len(sources.locations)} audio sources")
            # stop() may have been called from a listener while loading
            if self._state is PlayerState.LOADING:
                self._transition(PlayerState.READY)
        except Exception as e:
            self._log(f"Error: {e}", logging.ERROR)
            raise
        finally:
            if self._state is PlayerState.LOADING:
                self._transition(PlayerState.READY if self._loaded else PlayerState.IDLE)

    def play(self) -> int:
        """
        Start the template from segment 0 in a new session.

        Returns:
            The new session id

        Raises:
            SchedulerStateError: If load() has not completed
            PlaybackError: If the output graph cannot be opened
        """
        if not self._loaded:
            raise SchedulerStateError("load() must complete before play()")

        try:
            self.graph.open()
        except PlaybackError as e:
            self._log(f"Error initializing audio output: {e}", logging.ERROR)
            self._new_session()
            self._teardown()
            self._index = -1
            if self._state is not PlayerState.STOPPED:
                self._transition(PlayerState.STOPPED)
            raise

        self._teardown()
        session = self._new_session()
        self._log(f"Starting playback (session {session})")
        self._transition(PlayerState.PLAYING)
        self._start_segment(session, 0)
        return session

    def skip(self) -> bool:
        """
        Jump to the next segment without a crossfade.

        Returns:
            True if skipped, False if there is nothing to skip to
        """
        if self._state not in (PlayerState.PLAYING, PlayerState.CROSSFADE_PENDING):
            self._log(f"Skip ignored in state {self._state.value}", logging.DEBUG)
            return False
        index = self._index
        if index < 0 or index + 1 >= len(self.template.segments):
            self._log("Skip ignored: no following segment", logging.DEBUG)
            return False

        self._teardown()
        session = self._new_session()

        if self.template.is_survey_gate(index):
            self._log(f"Skipping item {index}; survey comes first")
            self._enter_survey(index)
            return True

        self._log(f"Skipping to item {index + 1}: {self.template.segments[index + 1].label}")
        self._transition(PlayerState.PLAYING)
        self._start_segment(session, index + 1)
        return True

    def stop(self) -> None:
        """
        Halt all output and invalidate the session. Idempotent.

        During load() the decode still completes; the player ends up
        STOPPED with its assets available to a later play().
        """
        if self._state in (PlayerState.IDLE, PlayerState.STOPPED):
            return

        self._log("Stopping playlist")
        self._new_session()
        self._teardown()
        self._index = -1
        self._transition(PlayerState.STOPPED)

    def answer_survey(self, answer: str) -> SurveyResponse:
        """
        Record the survey answer and resume with the segment after the gate.

        Raises:
            SchedulerStateError: If no survey is pending
        """
        if not self.survey_pending:
            raise SchedulerStateError("No survey is pending")

        survey = self.template.survey
        if survey.options and answer not in survey.options:
            self._log(f"Survey answer '{answer}' is not one of {list(survey.options)}", logging.WARNING)

        response = SurveyResponse(
            question=survey.question,
            answer=answer,
            timestamp=int(time.time() * 1000),
        )
        if self.survey_sink is not None:
            self.survey_sink(response)
        self._log(f"Survey answered: {answer}")

        next_index = survey.after_index + 1
        if next_index < len(self.template.segments):
            self._transition(PlayerState.PLAYING)
            self._start_segment(self._session, next_index)
        else:
            self._log("Playlist finished")
            self.stop()
        return response

    # ==================== SESSION INTERNALS ====================

    def _new_session(self) -> int:
        self._session += 1
        return self._session

    def _defer(self, session: int, index: int, delay: float,
               action: Callable[[int, int], None]) -> None:
        def fire() -> None:
            if handle in self._timers:
                self._timers.remove(handle)
            self._run_if_current(session, index, action)

        handle = self.clock.call_later(delay, fire)
        self._timers.append(handle)

    def _run_if_current(self, session: int, index: int,
                        action: Callable[[int, int], None]) -> None:
        if session != self._session or index != self._index:
            logger.debug(f"Stale continuation for session {session} item {index} ignored")
            return
        action(session, index)

    def _teardown(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        voices, self._voices = self._voices, []
        for voice in voices:
            self._release(voice, stop_source=True)

    def _release(self, voice: _Voice, stop_source: bool) -> None:
        to_stop = ([voice.source] if stop_source else []) + voice.background_sources
        for node in to_stop:
            try:
                self.graph.stop(node)
            except Exception as e:
                self._log(f"Error stopping source {node.node_id}: {e}", logging.WARNING)
        for node in [voice.source, *voice.background_sources, voice.background_gain, voice.gain]:
            if node is not None:
                self.graph.disconnect(node)

    # ==================== SEGMENT LIFECYCLE ====================

    def _start_segment(self, session: int, index: int) -> None:
        if session != self._session:
            return
        segment = self.template.segments[index]
        self._index = index
        self._emit()

        asset = self._assets.get(segment.source_key)
        if asset is None:
            self._log(f"No audio buffer found for item {index}: {segment.label}", logging.WARNING)
            self._defer(session, index, self.missing_asset_delay, self._complete_segment)
            return

        try:
            voice = self._create_voice(session, index, segment, asset)
        except Exception as e:
            self._log(f"Error playing item {index}: {e}", logging.ERROR)
            self._defer(session, index, self.missing_asset_delay, self._complete_segment)
            return

        self._voices.append(voice)
        self._log(f"Playing item {index}: {segment.label}")
        self._arm_crossfade(session, index, asset.duration)

    def _create_voice(self, session: int, index: int, segment: Segment, asset: PCMAsset) -> _Voice:
        graph = self.graph
        start = graph.current_time
        fade_in, fade_out = fit_fades(self.template.fade_in, self.template.fade_out, asset.duration)
        envelope = Envelope(start=start, duration=asset.duration, fade_in=fade_in, fade_out=fade_out)

        source = graph.create_source(asset)
        gain = graph.create_gain(0.0)
        voice = _Voice(session=session, index=index, source=source, gain=gain)
        try:
            graph.connect(source, gain)
            graph.connect(gain)
            for ramp, value, when in envelope.automation():
                graph.schedule_gain(gain, ramp, value, when)

            if segment.background_music:
                self._start_background(voice, segment, start, asset.duration)

            graph.start(source, start, on_ended=lambda: self._on_source_ended(voice))
        except Exception:
            self._release(voice, stop_source=False)
            raise
        return voice

    def _start_background(self, voice: _Voice, segment: Segment, start: float, duration: float) -> None:
        background = self._assets.get(segment.background_music)
        if background is None:
            self._log(f"Background music unavailable for item {voice.index}", logging.WARNING)
            return

        voice.background_gain = self.graph.create_gain(self.background_gain)
        self.graph.connect(voice.background_gain, voice.gain)
        loop_starts = tile_background(start, duration, background.duration)
        for loop_start in loop_starts:
            loop = self.graph.create_source(background)
            voice.background_sources.append(loop)
            self.graph.connect(loop, voice.background_gain)
            self.graph.start(loop, loop_start)
        self._log(f"Playing background music for item {voice.index} ({len(loop_starts)} loops)")

    def _arm_crossfade(self, session: int, index: int, duration: float) -> None:
        if index + 1 >= len(self.template.segments):
            return
        if self.template.is_survey_gate(index):
            self._log(f"Survey follows item {index}; no crossfade armed")
            return

        _, fade_out = fit_fades(self.template.fade_in, self.template.fade_out, duration)
        delay = duration - fade_out
        if fade_out <= 0 or delay <= 0:
            # Too short to overlap; the natural end event advances instead
            return

        self._defer(session, index, delay, self._crossfade)
        self._transition(PlayerState.CROSSFADE_PENDING)

    def _crossfade(self, session: int, index: int) -> None:
        self._log(f"Crossfading item {index} into item {index + 1}")
        self._transition(PlayerState.PLAYING)
        self._start_segment(session, index + 1)

    def _on_source_ended(self, voice: _Voice) -> None:
        if voice in self._voices:
            self._voices.remove(voice)
            self._release(voice, stop_source=False)
        self._run_if_current(voice.session, voice.index, self._complete_segment)

    def _complete_segment(self, session: int, index: int) -> None:
        self._log(f"Finished playing item {index}: {self.template.segments[index].label}")
        if self.template.is_survey_gate(index):
            self._enter_survey(index)
            return

        next_index = index + 1
        if next_index < len(self.template.segments):
            self._transition(PlayerState.PLAYING)
            self._start_segment(session, next_index)
        else:
            self._log("Playlist finished")
            self.stop()

    def _enter_survey(self, index: int) -> None:
        self._index = index
        self._transition(PlayerState.SURVEY_WAIT)
        self._log(f"Waiting for survey answer: {self.template.survey.question}")

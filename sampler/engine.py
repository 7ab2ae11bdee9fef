"""
Polyphonic voice engine.

Owns the active voices, turns ADSR settings into gain automation on the
playback device, and applies play-mode and loop-on-release policy.
Envelope commands are issued once and realised by the device; deferred
cleanup runs from `tick()` on the device clock.
"""
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple, Union

from audio.buffer import SampleBuffer
from audio.device import DeviceProvider, DeviceUnavailableError, PlaybackDevice, SchedulingFailure
from routing.bus import EventBus
from sampler.envelopes.adsr import ADSR, ATTACK_FACTOR, DECAY_FACTOR, RELEASE_FACTOR, exponential_curve
from sampler.voice import (Command, Effect, LoopSettings, PlayMode, Voice, VoiceFinished,
                           VoiceReleased, VoiceStarted, transition)
from sequencing.scheduler import TaskScheduler

logger = logging.getLogger(__name__)

# Never schedule automation closer to "now" than this (seconds)
MIN_SCHEDULE_LOOKAHEAD = 0.005
# Zero-length release: time for the gain drop to land before stopping
ZERO_RELEASE_GRACE = 0.01
# Shortest loop region playNote will set up (seconds)
MIN_LOOP_LENGTH = 0.1


@dataclass
class PlayOptions:
    play_mode: PlayMode = PlayMode.POLY
    adsr: ADSR = field(default_factory=ADSR)
    velocity: int = 127
    playback_rate: float = 1.0
    pan: float = 0.0                   # -100 (left) .. 100 (right)
    start_time: float = 0.0            # offset into the buffer, seconds
    duration: Optional[float] = None
    in_frame: Optional[int] = None
    out_frame: Optional[int] = None
    loop_enabled: bool = False
    loop_on_release: bool = False
    loop_start: float = 0.0            # seconds
    loop_end: Optional[float] = None   # seconds, default end of buffer


def clamp_loop(loop_start: float, loop_end: Optional[float], duration: float) -> Tuple[float, float]:
    """Keep a loop region of at least MIN_LOOP_LENGTH inside [0, duration]."""
    start = min(max(0.0, loop_start), max(0.0, duration - MIN_LOOP_LENGTH))
    end = duration if loop_end is None else loop_end
    end = min(max(end, start + MIN_LOOP_LENGTH), duration)
    return start, end


def _matcher(pattern: str):
    if pattern.endswith("*"):
        prefix = pattern[:-1]
        return lambda vid: vid.startswith(prefix)
    if pattern.endswith("-"):
        return lambda vid: vid.startswith(pattern)
    return lambda vid: vid == pattern


class VoiceEngine:
    """
    All public methods are serialized by one re-entrant lock, so a clock
    thread may call `tick()` while the control thread plays notes.
    """

    def __init__(self, device: Union[DeviceProvider, PlaybackDevice], bus: Optional[EventBus] = None):
        self._provider = device if isinstance(device, DeviceProvider) else DeviceProvider.of(device)
        self._device: Optional[PlaybackDevice] = None
        self.bus = bus
        self._voices: Dict[str, Voice] = {}
        self._last_id: Optional[str] = None
        # legato note id -> id of the voice it retuned
        self._aliases: Dict[str, str] = {}
        self._scheduler = TaskScheduler()
        self._lock = threading.RLock()

    ###########################################################################
    ##                               PLAY                                    ##
    ###########################################################################

    async def play_note(self, buffer: SampleBuffer, voice_id: str,
                        options: Optional[PlayOptions] = None) -> Optional[str]:
        """
        Start a voice for `buffer`. Returns the id of the sounding voice, or
        None when no device could be acquired or it refused to start.
        """
        options = options or PlayOptions()
        try:
            device = await self._provider.get()
        except DeviceUnavailableError as e:
            logger.error(f"[Engine] play_note({voice_id}) failed: {e}")
            return None

        with self._lock:
            self._device = device
            if options.play_mode == PlayMode.MONO:
                for vid in list(self._voices):
                    self._finish(vid, Command.FORCE_STOP, "mono")
                self._last_id = None
            elif options.play_mode == PlayMode.LEGATO and self._last_id is not None:
                last = self._voices.get(self._last_id)
                if last is not None and not last.finished:
                    last.graph.source.set_playback_rate(options.playback_rate)
                    self._voices[last.id] = replace(last, playback_rate=options.playback_rate)
                    if voice_id not in self._voices:
                        self._aliases[voice_id] = last.id
                    logger.debug(f"[Voice] legato: {voice_id} retunes {last.id} "
                                 f"-> rate {options.playback_rate:.4f}")
                    return voice_id

            self._aliases.pop(voice_id, None)
            if voice_id in self._voices:
                logger.warning(f"[Voice] id {voice_id} still active; stopping it before reuse")
                self._finish(voice_id, Command.FORCE_STOP, "replaced")
            return self._start_voice(device, buffer, voice_id, options)

    @staticmethod
    def _playback_window(buffer: SampleBuffer, options: PlayOptions) -> Tuple[float, float]:
        offset = options.start_time or 0.0
        duration = options.duration or (buffer.duration - offset)
        if options.in_frame is not None and options.out_frame is not None and buffer.frame_count:
            offset = options.in_frame / buffer.frame_count * buffer.duration
            duration = (options.out_frame - options.in_frame) / buffer.frame_count * buffer.duration
        return offset, duration

    def _start_voice(self, device: PlaybackDevice, buffer: SampleBuffer, voice_id: str,
                     options: PlayOptions) -> Optional[str]:
        now = device.now()
        offset, duration = self._playback_window(buffer, options)

        loop = LoopSettings()
        if options.loop_enabled or options.loop_on_release:
            start, end = clamp_loop(options.loop_start, options.loop_end, buffer.duration)
            loop = LoopSettings(enabled=True, on_release=options.loop_on_release, start=start, end=end)
        loops_now = loop.enabled and not loop.on_release

        try:
            graph = device.create_voice_graph()
        except SchedulingFailure as e:
            logger.warning(f"[Voice] {voice_id}: no voice available on device: {e}")
            return None
        voice = Voice(id=voice_id, adsr=options.adsr, start_time=now, velocity=options.velocity,
                      loop=loop, playback_rate=options.playback_rate, graph=graph)
        try:
            src = graph.source
            src.buffer = buffer
            src.set_playback_rate(options.playback_rate)
            if loops_now:
                src.set_loop(True, loop.start, loop.end)
            graph.pan.value = max(-1.0, min(1.0, options.pan / 100.0))
            self._schedule_attack(voice, now)
            device.connect(graph.pan, device.destination)
            device.start(src, offset, duration if duration > 0 and not loops_now else None)
        except SchedulingFailure as e:
            logger.warning(f"[Voice] {voice_id}: device refused to start: {e}")
            graph.disconnect()
            return None

        self._voices[voice_id] = voice
        self._last_id = voice_id
        if not loops_now:
            # playback runs out on its own unless a release takes over first
            length = duration if duration > 0 else buffer.duration - offset
            ends_at = now + max(0.0, length) / max(1e-9, options.playback_rate)
            self._scheduler.schedule(voice_id, ends_at, lambda: self._finish(voice_id, Command.END, "ended"))
        self._notify(VoiceStarted(voice_id, now))
        logger.debug(f"[Voice] start {voice_id} @ {now:.3f}s rate {options.playback_rate:.4f} "
                     f"vel {options.velocity} loop {loop}")
        return voice_id

    @staticmethod
    def _schedule_attack(voice: Voice, t0: float) -> None:
        gain = voice.graph.gain
        times = voice.times
        peak = voice.peak
        sustain = times.sustain_level * peak

        gain.set_value_at_time(0.0, t0)
        if times.attack_time > 0:
            gain.set_value_curve_at_time(exponential_curve(0.0, 1.0, ATTACK_FACTOR) * peak, t0, times.attack_time)
        else:
            gain.set_value_at_time(peak, t0)

        attack_end = t0 + times.attack_time
        if times.decay_time > 0:
            curve = exponential_curve(1.0, times.sustain_level, DECAY_FACTOR) * peak
            gain.set_value_curve_at_time(curve, attack_end, times.decay_time)
        else:
            gain.set_value_at_time(sustain, attack_end)

        # hold sustain until release
        gain.set_value_at_time(sustain, attack_end + times.decay_time)

    ###########################################################################
    ##                              RELEASE                                  ##
    ###########################################################################

    def trigger_release(self, voice_id: str) -> None:
        """Start the release of a voice. Repeated calls are no-ops."""
        with self._lock:
            voice_id = self._aliases.get(voice_id, voice_id)
            voice = self._voices.get(voice_id)
            if voice is None or self._device is None:
                return
            now = self._device.now()
            voice, _ = transition(voice, Command.ADVANCE, now)
            released, effects = transition(voice, Command.RELEASE, now)
            if not effects:
                return
            self._voices[voice_id] = released
            self._notify(VoiceReleased(voice_id, now))
            self._carry_out(released, effects, "released", level=voice.level_at(now))

    def _schedule_release(self, voice: Voice, level: float) -> None:
        device = self._device
        gain = voice.graph.gain
        src = voice.graph.source
        release_time = voice.times.release_time
        now = device.now()
        start = max(voice.release_time, now + MIN_SCHEDULE_LOOKAHEAD)
        try:
            if voice.loop.on_release:
                # keep sounding over the loop while fading out
                src.set_loop(True, voice.loop.start, voice.loop.end)
            elif src.loop:
                src.set_loop(False)
            # hold the level reached until the release curve starts
            gain.set_value_at_time(level, now)
            gain.set_value_at_time(level, start)
            if release_time > 0:
                gain.set_value_curve_at_time(exponential_curve(level, 0.0, RELEASE_FACTOR), start, release_time)
                cleanup_at = start + release_time
            else:
                gain.set_value_at_time(0.0, start)
                cleanup_at = start + ZERO_RELEASE_GRACE
        except SchedulingFailure as e:
            logger.warning(f"[Voice] {voice.id}: release scheduling failed ({e}); stopping now")
            self._finish(voice.id, Command.FAIL, "release failed")
            return
        self._scheduler.schedule(voice.id, cleanup_at, lambda: self._finish(voice.id, Command.END, "released"))
        logger.debug(f"[Voice] release {voice.id} @ {start:.3f}s over {release_time:.3f}s "
                     f"from {level:.3f}, cleanup @ {cleanup_at:.3f}s")

    def release_note(self, pattern: str, force_stop: bool = False) -> List[str]:
        """
        Release voices matching `pattern`: an exact id, or a prefix when the
        pattern ends with '*' (dropped) or '-' (kept). `force_stop` skips the
        release and cleans up at once.
        """
        with self._lock:
            match = _matcher(pattern)
            ids = [vid for vid in self._voices if match(vid)]
            for alias, vid in self._aliases.items():
                if match(alias) and vid not in ids:
                    ids.append(vid)
            for vid in ids:
                if force_stop:
                    self._finish(vid, Command.FORCE_STOP, "forced")
                else:
                    self.trigger_release(vid)
            return ids

    def release_all(self) -> None:
        with self._lock:
            for vid in list(self._voices):
                self.trigger_release(vid)

    def stop_all(self) -> None:
        with self._lock:
            for vid in list(self._voices):
                self.release_note(vid, force_stop=True)
            self._last_id = None

    ###########################################################################
    ##                         LIFECYCLE / CLEANUP                           ##
    ###########################################################################

    def _finish(self, voice_id: str, command: Command, reason: str) -> None:
        with self._lock:
            voice = self._voices.get(voice_id)
            if voice is None:
                return
            now = self._device.now() if self._device is not None else voice.start_time
            finished, effects = transition(voice, command, now)
            self._carry_out(finished, effects, reason)

    def _carry_out(self, voice: Voice, effects: List[Effect], reason: str, level: float = 0.0) -> None:
        graph = voice.graph
        for effect in effects:
            if effect == Effect.CANCEL_PENDING:
                graph.gain.cancel_scheduled_values(self._device.now())
            elif effect == Effect.SCHEDULE_RELEASE:
                self._schedule_release(voice, level)
            elif effect == Effect.STOP_SOURCE:
                try:
                    self._device.stop(graph.source)
                except SchedulingFailure as e:
                    logger.debug(f"[Voice] {voice.id}: stop ignored ({e})")
            elif effect == Effect.DISCONNECT:
                graph.disconnect()
            elif effect == Effect.REMOVE:
                self._remove(voice, reason)

    def _remove(self, voice: Voice, reason: str) -> None:
        if self._voices.get(voice.id) is not None:
            del self._voices[voice.id]
        self._scheduler.cancel(voice.id)
        if self._last_id == voice.id:
            self._last_id = None
        self._aliases = {a: vid for a, vid in self._aliases.items() if vid != voice.id}
        now = self._device.now() if self._device is not None else voice.start_time
        self._notify(VoiceFinished(voice.id, now, reason))
        logger.debug(f"[Voice] finished {voice.id} ({reason})")

    def tick(self) -> int:
        """Advance envelope phases and run cleanup due on the device clock."""
        with self._lock:
            if self._device is None:
                return 0
            now = self._device.now()
            for vid, voice in list(self._voices.items()):
                advanced, _ = transition(voice, Command.ADVANCE, now)
                if advanced is not voice:
                    self._voices[vid] = advanced
            return self._scheduler.run_due(now)

    def _notify(self, event) -> None:
        if self.bus is not None:
            self.bus.offer(event)

    ###########################################################################
    ##                               QUERIES                                 ##
    ###########################################################################

    def list_active_voice_ids(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [vid for vid in self._voices if vid.startswith(prefix)]

    def active_voice_count(self) -> int:
        with self._lock:
            return len(self._voices)

    def get_voice(self, voice_id: str) -> Optional[Voice]:
        """Look up a voice by its id, or by a legato note id that retuned it."""
        with self._lock:
            return self._voices.get(self._aliases.get(voice_id, voice_id))

    def cleanup_due_at(self, voice_id: str) -> Optional[float]:
        return self._scheduler.due_at(voice_id)

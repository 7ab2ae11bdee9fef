from __future__ import annotations
import bisect
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence
import numpy as np

from audio.buffer import SampleBuffer
from audio.device import SchedulingFailure


@dataclass
class _Automation:
    time: float
    duration: float               # 0 for a plain set
    values: np.ndarray
    cut: Optional[float] = None   # curve frozen from here on (cancel in progress)

    @property
    def end(self) -> float:
        if self.duration == 0.0:
            return self.time
        return self.cut if self.cut is not None else self.time + self.duration

    def evaluate(self, t: np.ndarray) -> np.ndarray:
        if self.duration == 0.0:
            return np.full(t.shape, self.values[0], dtype=np.float32)
        if self.cut is not None:
            t = np.minimum(t, self.cut)
        frac = np.clip((t - self.time) / self.duration, 0.0, 1.0)
        n = len(self.values)
        return np.interp(frac * (n - 1), np.arange(n), self.values).astype(np.float32)


class Param:
    """
    Automatable control value (gain, pan) on the device timeline.
    Curves are realised by linear interpolation through their points.
    Written from the control thread, read from the audio callback.
    """

    def __init__(self, value: float = 1.0):
        self._default = float(value)
        self._events: List[_Automation] = []
        self._lock = threading.Lock()
        self._last = float(value)
        self.connected = True

    # ---- control ----
    @property
    def value(self) -> float:
        return self._last

    @value.setter
    def value(self, v: float) -> None:
        with self._lock:
            self._events.clear()
            self._default = float(v)
            self._last = float(v)

    def _check_free(self, start: float, end: float) -> None:
        for ev in self._events:
            if ev.duration and ev.time < end and start < ev.end:
                raise SchedulingFailure(f"automation overlaps curve at {ev.time:.3f}s")
            if start < ev.time < end:
                raise SchedulingFailure(f"curve overlaps event at {ev.time:.3f}s")

    def _insert(self, ev: _Automation) -> None:
        times = [e.time for e in self._events]
        self._events.insert(bisect.bisect_right(times, ev.time), ev)

    def set_value_at_time(self, value: float, when: float) -> None:
        if when < 0:
            raise SchedulingFailure(f"negative time {when}")
        with self._lock:
            self._check_free(when, when)
            self._insert(_Automation(float(when), 0.0, np.array([value], dtype=np.float32)))

    def set_value_curve_at_time(self, values: Sequence[float], when: float, duration: float) -> None:
        values = np.asarray(values, dtype=np.float32)
        if len(values) < 2 or duration <= 0 or when < 0:
            raise SchedulingFailure("curve needs >= 2 points, positive duration and time")
        with self._lock:
            self._check_free(when, when + duration)
            self._insert(_Automation(float(when), float(duration), values))

    def cancel_scheduled_values(self, when: float) -> None:
        with self._lock:
            kept = []
            for ev in self._events:
                if ev.time >= when:
                    continue
                if ev.duration and ev.end > when:
                    ev.cut = float(when)
                kept.append(ev)
            self._events = kept

    # ---- render ----
    def render(self, times: np.ndarray) -> np.ndarray:
        with self._lock:
            out = np.full(times.shape, self._default, dtype=np.float32)
            for ev in self._events:
                mask = times >= ev.time
                if not mask.any():
                    break
                out[mask] = ev.evaluate(times[mask])
            if out.size:
                self._last = float(out[-1])
            return out

    def value_at(self, t: float) -> float:
        return float(self.render(np.array([t], dtype=np.float64))[0])

    def prune(self, before: float) -> None:
        """Drop automation that can no longer affect times >= `before`."""
        with self._lock:
            while len(self._events) > 1 and self._events[1].time <= before and self._events[0].end <= before:
                first = self._events.pop(0)
                self._default = float(first.evaluate(np.array([first.end]))[0])

    def disconnect(self) -> None:
        self.connected = False


class BufferSource:
    """
    Plays a SampleBuffer once from `offset` for `duration` seconds, or loops
    [loop_start, loop_end) while `loop` is set. Position advances by
    playback_rate * buffer_sr / device_sr frames per output sample.
    Control-thread changes go through `set_loop` and `set_playback_rate`,
    which take the same lock as `render`.
    """
    IDLE, PLAYING, STOPPED = "idle", "playing", "stopped"

    def __init__(self):
        self.buffer: Optional[SampleBuffer] = None
        self.playback_rate = 1.0
        self.loop = False
        self.loop_start = 0.0
        self.loop_end = 0.0
        self.state = self.IDLE
        self.connected = True
        self.start_time: Optional[float] = None
        self._pos = 0.0
        self._end_frame = 0.0
        self._lock = threading.Lock()

    @property
    def ended(self) -> bool:
        return self.state == self.STOPPED

    def set_loop(self, enabled: bool, start: float = 0.0, end: float = 0.0) -> None:
        with self._lock:
            self.loop, self.loop_start, self.loop_end = bool(enabled), float(start), float(end)

    def set_playback_rate(self, rate: float) -> None:
        with self._lock:
            self.playback_rate = float(rate)

    def start(self, when: float, offset: float = 0.0, duration: Optional[float] = None) -> None:
        with self._lock:
            if self.state != self.IDLE:
                raise SchedulingFailure("source already started")
            if self.buffer is None:
                raise SchedulingFailure("source has no buffer")
            sr = self.buffer.sample_rate
            self._pos = max(0.0, offset) * sr
            end = self.buffer.frame_count if duration is None else (max(0.0, offset) + duration) * sr
            self._end_frame = min(float(self.buffer.frame_count), end)
            self.start_time = float(when)
            self.state = self.PLAYING

    def stop(self) -> None:
        with self._lock:
            if self.state == self.IDLE:
                raise SchedulingFailure("cannot stop a source that was never started")
            self.state = self.STOPPED

    def disconnect(self) -> None:
        self.connected = False

    def _loop_bounds(self):
        sr = self.buffer.sample_rate
        n = self.buffer.frame_count
        ls = min(max(0.0, self.loop_start * sr), n)
        le = min(self.loop_end * sr, n) if self.loop_end > 0 else n
        if le <= ls:
            ls, le = 0.0, float(n)
        return ls, le

    def render(self, frames: int, sr: int) -> np.ndarray:
        """(channels, frames) block; silence once stopped."""
        with self._lock:
            return self._render(frames, sr)

    def _render(self, frames: int, sr: int) -> np.ndarray:
        buf = self.buffer
        out = np.zeros((buf.channels if buf is not None else 1, frames), dtype=np.float32)
        if self.state != self.PLAYING or frames <= 0:
            return out

        inc = self.playback_rate * buf.sample_rate / sr
        pos = self._pos + inc * np.arange(frames, dtype=np.float64)
        if self.loop:
            ls, le = self._loop_bounds()
            over = pos >= le
            pos[over] = ls + np.mod(pos[over] - ls, le - ls)
            valid = np.ones(frames, dtype=bool)
            next_pos = pos[-1] + inc
            if next_pos >= le:
                next_pos = ls + np.mod(next_pos - ls, le - ls)
        else:
            valid = pos < self._end_frame
            next_pos = pos[-1] + inc

        idx = np.arange(buf.frame_count)
        for c in range(buf.channels):
            out[c, valid] = np.interp(pos[valid], idx, buf.data[c], right=0.0)

        self._pos = float(next_pos)
        if not self.loop and not valid[-1]:
            self.state = self.STOPPED
        elif not self.loop and self._pos >= self._end_frame:
            self.state = self.STOPPED
        return out

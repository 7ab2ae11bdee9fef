from __future__ import annotations
import math
import threading
from typing import Any, List, Optional
import numpy as np

from audio.buffer import SampleBuffer
from audio.device import SchedulingFailure, VoiceGraph
from audio.dsp import pan_gains
from audio.nodes import BufferSource, Param


class Destination:
    """Output bus every voice graph connects to."""

    def __repr__(self) -> str:
        return "<Destination>"


class GraphDevice:
    """
    Playback device built from BufferSource -> gain Param -> pan Param graphs.
    The clock is the number of frames rendered so far; subclasses decide
    who pulls blocks (sound card callback or the caller).
    """

    def __init__(self, sr: int = 44100, channels: int = 2):
        if channels not in (1, 2):
            raise ValueError("Only mono or stereo output supported currently.")
        self.sr = int(sr)
        self.channels = int(channels)
        self.destination = Destination()
        self._graphs: List[VoiceGraph] = []
        self._routed: set = set()
        self._lock = threading.Lock()
        self._frames = 0

    ###########################################################################
    ##                          DEVICE INTERFACE                             ##
    ###########################################################################

    def now(self) -> float:
        return self._frames / self.sr

    def create_voice_graph(self) -> VoiceGraph:
        # silent until the engine schedules an envelope
        graph = VoiceGraph(source=BufferSource(), gain=Param(0.0), pan=Param(0.0))
        with self._lock:
            self._graphs.append(graph)
        return graph

    def connect(self, node: Any, destination: Any) -> None:
        if destination is not self.destination:
            raise SchedulingFailure("can only connect to this device's destination")
        with self._lock:
            for g in self._graphs:
                if node is g.pan or node is g.gain or node is g.source:
                    self._routed.add(id(g))
                    return
        raise SchedulingFailure("node does not belong to this device")

    def start(self, source: BufferSource, offset: float = 0.0, duration: Optional[float] = None) -> None:
        source.start(self.now(), offset, duration)

    def stop(self, source: BufferSource) -> None:
        source.stop()

    def active_graph_count(self) -> int:
        with self._lock:
            return sum(1 for g in self._graphs if self._alive(g))

    ###########################################################################
    ##                              RENDERING                                ##
    ###########################################################################

    @staticmethod
    def _alive(g: VoiceGraph) -> bool:
        return g.source.connected and g.gain.connected and g.pan.connected and not g.source.ended

    def _mix_graph(self, g: VoiceGraph, frames: int, times: np.ndarray, mix: np.ndarray) -> None:
        sig = g.source.render(frames, self.sr)
        env = g.gain.render(times)
        p = float(g.pan.render(times[:1])[0])
        if sig.shape[0] == 1:
            gL, gR = pan_gains(p)
            left = right = sig[0]
        else:
            # balance for stereo sources
            gL, gR = min(1.0, 1.0 - p), min(1.0, 1.0 + p)
            left, right = sig[0], sig[1]
        if self.channels == 1:
            mix[0] += env * 0.5 * (gL * left + gR * right)
        else:
            mix[0] += env * gL * left
            mix[1] += env * gR * right
        g.gain.prune(times[0])
        g.pan.prune(times[0])

    def render_block(self, frames: int) -> np.ndarray:
        """Render the next `frames` of output, shape (frames, channels)."""
        times = self.now() + np.arange(frames, dtype=np.float64) / self.sr
        mix = np.zeros((self.channels, frames), dtype=np.float32)
        with self._lock:
            # forget graphs that were disconnected or ran out
            self._graphs = [g for g in self._graphs
                            if g.source.connected and g.gain.connected and g.pan.connected]
            graphs = [g for g in self._graphs
                      if id(g) in self._routed and g.source.state == BufferSource.PLAYING]
            self._routed = {id(g) for g in self._graphs} & self._routed
        for g in graphs:
            self._mix_graph(g, frames, times, mix)
        self._frames += frames
        return mix.T


class OfflineDevice(GraphDevice):
    """
    Device whose clock only moves when the caller renders. Useful for
    auditioning into a buffer and for deterministic tests.
    """

    def __init__(self, sr: int = 44100, channels: int = 2, blocksize: int = 256, capture: bool = False):
        super().__init__(sr=sr, channels=channels)
        self.blocksize = int(blocksize)
        self.capture = capture
        self._captured: List[np.ndarray] = []

    def advance(self, seconds: float) -> np.ndarray:
        total = int(math.ceil(round(seconds * self.sr, 6)))
        blocks = []
        done = 0
        while done < total:
            n = min(self.blocksize, total - done)
            blocks.append(self.render_block(n))
            done += n
        out = np.concatenate(blocks) if blocks else np.zeros((0, self.channels), dtype=np.float32)
        if self.capture:
            self._captured.append(out)
        return out

    def recording(self) -> SampleBuffer:
        frames = (np.concatenate(self._captured) if self._captured
                  else np.zeros((0, self.channels), dtype=np.float32))
        return SampleBuffer.from_frames(frames, self.sr)

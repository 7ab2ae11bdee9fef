from __future__ import annotations
import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Sequence

from audio.buffer import SampleBuffer

logger = logging.getLogger(__name__)


class SchedulingFailure(RuntimeError):
    """The playback device rejected a start/stop or automation command."""


class DeviceUnavailableError(RuntimeError):
    """No playback device could be acquired."""


###########################################################################
##                         COLLABORATOR PROTOCOLS                        ##
###########################################################################

class AudioParam(Protocol):
    value: float

    def set_value_at_time(self, value: float, when: float) -> None: ...
    def set_value_curve_at_time(self, values: Sequence[float], when: float, duration: float) -> None: ...
    def cancel_scheduled_values(self, when: float) -> None: ...


class SourceNode(Protocol):
    buffer: Optional[SampleBuffer]
    playback_rate: float
    loop: bool
    loop_start: float
    loop_end: float

    def set_loop(self, enabled: bool, start: float = 0.0, end: float = 0.0) -> None: ...
    def set_playback_rate(self, rate: float) -> None: ...
    def disconnect(self) -> None: ...


@dataclass
class VoiceGraph:
    """source -> gain -> pan -> destination"""
    source: Any
    gain: Any
    pan: Any

    def disconnect(self) -> None:
        for node in (self.source, self.gain, self.pan):
            node.disconnect()


class PlaybackDevice(Protocol):
    destination: Any

    def now(self) -> float: ...
    def create_voice_graph(self) -> VoiceGraph: ...
    def connect(self, node: Any, destination: Any) -> None: ...
    def start(self, source: Any, offset: float = 0.0, duration: Optional[float] = None) -> None: ...
    def stop(self, source: Any) -> None: ...


# Receives the offline graph before rendering; sets its gain
GraphBuilder = Callable[[Any], None]


class OfflineRenderer(Protocol):
    async def render_offline(self, buffer: SampleBuffer, channels: int, frame_count: int,
                             sample_rate: int, build_graph: Optional[GraphBuilder] = None) -> SampleBuffer: ...


###########################################################################
##                           DEVICE ACQUISITION                          ##
###########################################################################

class DeviceProvider:
    """
    Acquires the shared playback device once and hands the same instance
    to every caller afterwards.
    """

    def __init__(self, factory: Callable[[], Any]):
        self._factory = factory
        self._device: Optional[PlaybackDevice] = None
        self._lock: Optional[asyncio.Lock] = None

    @classmethod
    def of(cls, device: PlaybackDevice) -> "DeviceProvider":
        provider = cls(lambda: device)
        provider._device = device
        return provider

    async def get(self) -> PlaybackDevice:
        if self._device is not None:
            return self._device
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._device is None:
                try:
                    device = self._factory()
                    if inspect.isawaitable(device):
                        device = await device
                except Exception as e:
                    raise DeviceUnavailableError(f"could not acquire playback device: {e}") from e
                logger.info(f"[Engine] playback device acquired: {type(device).__name__}")
                self._device = device
        return self._device

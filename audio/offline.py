from __future__ import annotations
import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy import signal

from audio.buffer import SampleBuffer
from audio.device import GraphBuilder

logger = logging.getLogger(__name__)


@dataclass
class OfflineGraph:
    """What a GraphBuilder may configure before an offline render."""
    gain: float = 1.0


class ResamplingRenderer:
    """
    Offline render: gain, channel remix (stereo->mono averages, mono->stereo
    duplicates) and polyphase resampling, fitted to the requested length.
    Work runs in a worker thread so the event loop is not blocked.
    """

    async def render_offline(self, buffer: SampleBuffer, channels: int, frame_count: int,
                             sample_rate: int, build_graph: Optional[GraphBuilder] = None) -> SampleBuffer:
        graph = OfflineGraph()
        if build_graph is not None:
            build_graph(graph)
        return await asyncio.to_thread(self._render, buffer, channels, frame_count, sample_rate, graph)

    @staticmethod
    def _remix(data: np.ndarray, channels: int) -> np.ndarray:
        if data.shape[0] == channels:
            return data
        if channels == 1:
            return data.mean(axis=0, keepdims=True)
        if data.shape[0] == 1:
            return np.repeat(data, channels, axis=0)
        # direct mapping of the channels both layouts share
        out = np.zeros((channels, data.shape[1]), dtype=data.dtype)
        n = min(channels, data.shape[0])
        out[:n] = data[:n]
        return out

    def _render(self, buffer: SampleBuffer, channels: int, frame_count: int,
                sample_rate: int, graph: OfflineGraph) -> SampleBuffer:
        data = buffer.data.astype(np.float64) * graph.gain
        data = self._remix(data, channels)

        if sample_rate != buffer.sample_rate and data.shape[1] > 0:
            g = math.gcd(int(sample_rate), buffer.sample_rate)
            up, down = int(sample_rate) // g, buffer.sample_rate // g
            data = signal.resample_poly(data, up, down, axis=1)

        if data.shape[1] < frame_count:
            data = np.pad(data, ((0, 0), (0, frame_count - data.shape[1])))
        data = data[:, :frame_count]
        logger.debug(f"[Offline] rendered {frame_count} frames, {channels}ch @ {sample_rate} Hz "
                     f"(gain {graph.gain:.4f})")
        return SampleBuffer(int(sample_rate), data.astype(np.float32))

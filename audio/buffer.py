from __future__ import annotations
from dataclasses import dataclass
import numpy as np


@dataclass(frozen=True, eq=False)
class SampleBuffer:
    """
    Decoded audio: `data` is float32 shaped (channels, frames).
    Treated as a value; transforms return new buffers. Buffers compare equal
    by sample rate and samples, and are not hashable.
    """
    sample_rate: int
    data: np.ndarray

    def __post_init__(self):
        data = np.asarray(self.data, dtype=np.float32)
        if data.ndim == 1:
            data = data[np.newaxis, :]
        if data.ndim != 2:
            raise ValueError(f"Expected (channels, frames) data, got shape {data.shape}")
        if int(self.sample_rate) <= 0:
            raise ValueError(f"Invalid sample rate: {self.sample_rate}")
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "sample_rate", int(self.sample_rate))

    def __eq__(self, other):
        if not isinstance(other, SampleBuffer):
            return NotImplemented
        return self.sample_rate == other.sample_rate and np.array_equal(self.data, other.data)

    __hash__ = None

    @property
    def channels(self) -> int:
        return int(self.data.shape[0])

    @property
    def frame_count(self) -> int:
        return int(self.data.shape[1])

    @property
    def duration(self) -> float:
        return self.frame_count / self.sample_rate

    def channel(self, index: int) -> np.ndarray:
        return self.data[index]

    def copy(self) -> "SampleBuffer":
        return SampleBuffer(self.sample_rate, self.data.copy())

    def with_data(self, data: np.ndarray) -> "SampleBuffer":
        return SampleBuffer(self.sample_rate, data)

    def frames(self) -> np.ndarray:
        """Interleaved view, shape (frames, channels)."""
        return self.data.T

    @classmethod
    def from_frames(cls, frames: np.ndarray, sample_rate: int) -> "SampleBuffer":
        frames = np.asarray(frames, dtype=np.float32)
        if frames.ndim == 1:
            return cls(sample_rate, frames[np.newaxis, :])
        return cls(sample_rate, np.ascontiguousarray(frames.T))

    @classmethod
    def silence(cls, frames: int, sample_rate: int = 44100, channels: int = 1) -> "SampleBuffer":
        return cls(sample_rate, np.zeros((channels, frames), dtype=np.float32))

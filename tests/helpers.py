import numpy as np

from audio.buffer import SampleBuffer

# Small rates keep the offline renders cheap
DEVICE_SR = 1000


def sine(freq: float, seconds: float, sr: int, channels: int = 1, amp: float = 1.0) -> SampleBuffer:
    t = np.arange(int(round(seconds * sr))) / sr
    wave = amp * np.sin(2 * np.pi * freq * t)
    return SampleBuffer(sr, np.tile(wave, (channels, 1)))


def filled(value: float, frames: int = 100, sr: int = 44100, channels: int = 1) -> SampleBuffer:
    return SampleBuffer(sr, np.full((channels, frames), value, dtype=np.float32))

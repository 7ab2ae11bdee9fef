import numpy as np
import pytest

from audio.buffer import SampleBuffer
from audio.dsp import db_to_lin, lin_to_db, pan_gains, peak, semitones_to_rate


def test_mono_data_is_promoted_to_one_channel():
    buf = SampleBuffer(8000, [0.1, 0.2, 0.3, 0.4])
    assert buf.channels == 1
    assert buf.frame_count == 4
    assert buf.duration == pytest.approx(0.0005)
    assert buf.data.dtype == np.float32


def test_interleaved_frames_round_trip():
    frames = np.array([[0.1, -0.1], [0.2, -0.2], [0.3, -0.3]])
    buf = SampleBuffer.from_frames(frames, 8000)
    assert buf.channels == 2
    assert np.allclose(buf.channel(1), [-0.1, -0.2, -0.3])
    assert np.allclose(buf.frames(), frames)


def test_buffers_compare_by_content():
    buf = SampleBuffer(8000, [0.5, 0.5, 0.5])
    assert buf == SampleBuffer(8000, np.full(3, 0.5))
    assert buf == buf.copy()
    assert buf != SampleBuffer(16000, [0.5, 0.5, 0.5])
    assert buf != SampleBuffer(8000, [0.5, 0.5, 0.25])
    assert buf != SampleBuffer(8000, [[0.5, 0.5, 0.5], [0.5, 0.5, 0.5]])
    assert buf != "buffer"
    with pytest.raises(TypeError):
        hash(buf)


def test_invalid_buffers_rejected():
    with pytest.raises(ValueError):
        SampleBuffer(0, [0.0])
    with pytest.raises(ValueError):
        SampleBuffer(8000, np.zeros((1, 2, 3)))


def test_decibels():
    assert db_to_lin(0.0) == 1.0
    assert db_to_lin(-6.0) == pytest.approx(0.501, abs=1e-3)
    assert lin_to_db(db_to_lin(-3.0)) == pytest.approx(-3.0)
    assert peak(np.array([[0.1, -0.7], [0.5, 0.2]])) == pytest.approx(0.7)
    assert peak(np.zeros((1, 0))) == 0.0


def test_pan_law_is_equal_power():
    for pan in (-1.0, -0.3, 0.0, 0.8, 1.0):
        left, right = pan_gains(pan)
        assert left ** 2 + right ** 2 == pytest.approx(1.0)
    assert pan_gains(-1.0) == pytest.approx((1.0, 0.0), abs=1e-9)


def test_semitones_to_rate():
    assert semitones_to_rate(12) == pytest.approx(2.0)
    assert semitones_to_rate(-12) == pytest.approx(0.5)
    assert semitones_to_rate(0) == 1.0

import asyncio

import numpy as np
import pytest

from audio.buffer import SampleBuffer
from audio.transforms import (ConversionOptions, apply_gain_db, convert_format, cut_at_loop_end,
                              effective_sample_rate, find_nearest_zero_crossing, normalize,
                              peak_normalization_gain, snap_markers_to_zero_crossings)
from tests.helpers import filled, sine


def test_gain_scales_without_touching_input():
    src = filled(0.25)
    out = apply_gain_db(src, 6.0)
    assert np.allclose(out.data, 0.25 * 10 ** (6 / 20))
    assert np.allclose(src.data, 0.25)


def test_gain_does_not_clip():
    out = apply_gain_db(filled(0.9), 6.0)
    assert out.data.max() > 1.0


def test_normalize_silence_returns_input():
    src = SampleBuffer.silence(100)
    assert normalize(src, -3.0) is src
    assert peak_normalization_gain(src) == 1.0


def test_normalize_to_target_peak():
    data = np.zeros(100)
    data[10] = 0.5
    data[20] = -0.25
    out = normalize(SampleBuffer(44100, data), -3.0)
    assert np.max(np.abs(out.data)) == pytest.approx(10 ** (-3 / 20), abs=1e-4)


def test_normalize_uses_peak_across_channels():
    src = SampleBuffer(44100, np.array([[0.2, -0.1], [0.0, -0.4]]))
    out = normalize(src, 0.0)
    assert np.allclose(out.data, [[0.5, -0.25], [0.0, -1.0]])


def test_convert_normalizes_before_gain():
    options = ConversionOptions(normalize=True, normalize_level_db=-6.0, gain_db=6.0)
    out = asyncio.run(convert_format(filled(0.25), options))
    assert np.allclose(out.data, 1.0, atol=1e-3)


def test_convert_without_options_keeps_format():
    src = sine(100.0, 0.1, 8000, channels=2, amp=0.5)
    out = asyncio.run(convert_format(src))
    assert out.sample_rate == 8000
    assert out.channels == 2
    assert out.frame_count == src.frame_count
    assert np.allclose(out.data, src.data, atol=1e-6)


def test_convert_resamples_to_expected_length():
    src = sine(100.0, 1.0, 44100)
    out = asyncio.run(convert_format(src, ConversionOptions(sample_rate=22050)))
    assert out.sample_rate == 22050
    assert out.frame_count == 22050


def test_convert_stereo_to_mono_averages():
    src = SampleBuffer(8000, np.vstack([np.full(50, 0.2), np.full(50, 0.4)]))
    out = asyncio.run(convert_format(src, ConversionOptions(channels=1)))
    assert out.channels == 1
    assert np.allclose(out.data, 0.3)


def test_convert_mono_to_stereo_duplicates():
    out = asyncio.run(convert_format(filled(0.3, frames=50), ConversionOptions(channels=2)))
    assert out.channels == 2
    assert np.allclose(out.data[0], out.data[1])


def test_convert_rejects_more_than_two_channels():
    with pytest.raises(ValueError):
        asyncio.run(convert_format(filled(0.3), ConversionOptions(channels=4)))


def test_convert_cuts_at_loop_end_first():
    options = ConversionOptions(cut_at_loop_end=True, loop_end=50)
    out = asyncio.run(convert_format(filled(0.3, frames=100), options))
    assert out.frame_count == 55


class RecordingRenderer:
    def __init__(self):
        self.calls = []

    async def render_offline(self, buffer, channels, frame_count, sample_rate, build_graph=None):
        graph = type("Graph", (), {"gain": 1.0})()
        build_graph(graph)
        self.calls.append((channels, frame_count, sample_rate, graph.gain))
        return buffer


def test_convert_hands_gain_to_renderer():
    renderer = RecordingRenderer()
    options = ConversionOptions(gain_db=-6.0, sample_rate=22050, channels=1)
    asyncio.run(convert_format(filled(0.5, frames=441, sr=44100), options, renderer=renderer))
    [(channels, frame_count, sample_rate, gain)] = renderer.calls
    assert (channels, frame_count, sample_rate) == (1, 221, 22050)
    assert gain == pytest.approx(10 ** (-6 / 20))


@pytest.mark.parametrize("original,selected,expected", [
    (44100, 0, 44100),
    (44100, "0", 44100),
    (48000, 96000, 96000),
    (48000, "22050", 22050),
    (44100, 48000, 44100),
    (44100, 22050, 22050),
])
def test_effective_sample_rate(original, selected, expected):
    assert effective_sample_rate(original, selected) == expected


###########################################################################
##                             ZERO CROSSINGS                            ##
###########################################################################

def test_zero_crossing_at_start_of_sine():
    src = sine(440.0, 0.1, 44100)
    assert find_nearest_zero_crossing(src, 0) == 0
    assert find_nearest_zero_crossing(src, 0, max_distance=1) == 0


def test_zero_crossing_directions():
    # 100 Hz at 1 kHz crosses zero every 5 frames
    src = sine(100.0, 0.1, 1000)
    assert find_nearest_zero_crossing(src, 12, "forward") == 15
    assert find_nearest_zero_crossing(src, 12, "backward") == 10
    assert find_nearest_zero_crossing(src, 12, "both") == 10
    assert find_nearest_zero_crossing(src, 14, "both") == 15


def test_zero_crossing_ties_prefer_lower_index():
    src = SampleBuffer(1000, np.array([0.3, 0.2, 0.9, 0.2, 0.3]))
    assert find_nearest_zero_crossing(src, 2, "both") == 1


def test_zero_crossing_equal_amplitude_prefers_nearer():
    src = SampleBuffer(1000, np.array([0.1, 0.5, 0.9, 0.5, 0.5, 0.1]))
    assert find_nearest_zero_crossing(src, 3, "both") == 5


def test_zero_crossing_respects_max_distance():
    src = SampleBuffer(1000, np.array([0.0, 0.5, 0.4, 0.9, 0.6]))
    assert find_nearest_zero_crossing(src, 3, "backward", max_distance=1) == 2
    assert find_nearest_zero_crossing(src, 3, "backward") == 0


def test_zero_crossing_respects_bounds():
    src = SampleBuffer(1000, np.array([0.0, 0.5, 0.4, 0.9, 0.6, 0.0]))
    assert find_nearest_zero_crossing(src, 3, "both", bounds=(1, 4)) == 2


def test_zero_crossing_rejects_unknown_direction():
    with pytest.raises(ValueError):
        find_nearest_zero_crossing(filled(0.5), 0, "sideways")


def test_snap_markers():
    src = sine(100.0, 0.1, 1000)
    snap = snap_markers_to_zero_crossings(src, 0.0125, 0.0385, loop_start=0.0225, loop_end=0.0305)
    assert snap.in_point == pytest.approx(0.015)
    assert snap.out_point == pytest.approx(0.035)
    assert snap.loop_start == pytest.approx(0.020)
    assert snap.loop_end == pytest.approx(0.030)
    names = [name for name, _, _ in snap.adjustments]
    assert names == ["in_point", "out_point", "loop_start"]


###########################################################################
##                               TRIMMING                                ##
###########################################################################

def test_cut_at_loop_end_keeps_padding():
    src = SampleBuffer(1000, np.arange(100, dtype=np.float32) / 100)
    out = cut_at_loop_end(src, 50)
    assert out.frame_count == 55
    assert np.array_equal(out.data, src.data[:, :55])


def test_cut_at_loop_end_noop_cases():
    src = filled(0.1, frames=100)
    assert cut_at_loop_end(src, 0) is src
    assert cut_at_loop_end(src, 100) is src
    assert cut_at_loop_end(src, 98).frame_count == 100

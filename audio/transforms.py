"""
Sample buffer transforms
========================
Gain, peak normalization, format conversion, zero-crossing search and
loop-end trimming. Every function returns a new SampleBuffer (or the input
itself when nothing changes); inputs are never modified.
"""
from __future__ import annotations
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

import numpy as np

from audio.buffer import SampleBuffer
from audio.device import OfflineRenderer
from audio.dsp import db_to_lin, lin_to_db, peak
from audio.offline import ResamplingRenderer

logger = logging.getLogger(__name__)

# Additional samples kept after the loop end when trimming
LOOP_END_PADDING = 5

# |x| below this counts as a zero crossing
ZERO_CROSSING_EPSILON = 1e-4


###########################################################################
##                           GAIN / NORMALIZE                            ##
###########################################################################

def apply_gain_db(buffer: SampleBuffer, db: float) -> SampleBuffer:
    """Scale by 10^(db/20). No clipping here; that is the caller's call."""
    return buffer.with_data(buffer.data * np.float32(db_to_lin(db)))


def peak_normalization_gain(buffer: SampleBuffer, target_db: float = 0.0) -> float:
    """
    Factor that brings the peak across all channels to `target_db` dBFS,
    or 1.0 for silence.
    """
    p = peak(buffer.data)
    if p == 0.0:
        return 1.0
    return db_to_lin(target_db) / p


def normalize(buffer: SampleBuffer, target_db: float = 0.0) -> SampleBuffer:
    if peak(buffer.data) == 0.0:
        return buffer
    gain = peak_normalization_gain(buffer, target_db)
    scaled = (buffer.data.astype(np.float64) * gain).astype(np.float32)
    return buffer.with_data(scaled)


###########################################################################
##                          FORMAT CONVERSION                            ##
###########################################################################

@dataclass
class ConversionOptions:
    gain_db: float = 0.0
    normalize: bool = False
    normalize_level_db: float = 0.0
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    cut_at_loop_end: bool = False
    loop_end: Optional[int] = None      # frames
    sample_name: str = ""               # only used in log lines


async def convert_format(buffer: SampleBuffer, options: Optional[ConversionOptions] = None,
                         renderer: Optional[OfflineRenderer] = None) -> SampleBuffer:
    """
    Trim (optional), normalize, then apply gain, then remix/resample through
    the offline renderer. Normalization is measured before gain, so gain
    always offsets the normalized level.
    """
    options = options or ConversionOptions()
    renderer = renderer or ResamplingRenderer()

    target_sr = int(options.sample_rate or buffer.sample_rate)
    target_channels = int(options.channels or buffer.channels)
    if target_channels not in (1, 2):
        raise ValueError(f"Only mono or stereo output supported, got {target_channels} channels")

    processed = buffer
    if options.cut_at_loop_end and options.loop_end:
        processed = cut_at_loop_end(processed, options.loop_end)

    # normalize first, then gain
    gain_value = 1.0
    normalize_gain = 1.0
    if options.normalize:
        normalize_gain = peak_normalization_gain(processed, options.normalize_level_db)
        gain_value *= normalize_gain
    if options.gain_db != 0:
        gain_value *= db_to_lin(options.gain_db)

    if options.normalize or options.gain_db != 0:
        name = f" ({options.sample_name})" if options.sample_name else ""
        p = peak(processed.data)
        original_db = lin_to_db(p) if p > 0 else float("-inf")
        logger.debug(f"[Convert]{name} normalize: {options.normalize}, target: {options.normalize_level_db}dBFS, "
                     f"original peak: {original_db:.1f}dBFS, normalizeGain: {normalize_gain:.4f}, "
                     f"gain: {options.gain_db}dB, final gain: {gain_value:.4f}")

    def build_graph(graph) -> None:
        graph.gain = gain_value

    frame_count = math.ceil(round(processed.duration * target_sr, 6))
    return await renderer.render_offline(processed, target_channels, frame_count, target_sr, build_graph)


def effective_sample_rate(original: int, selected: Union[int, str]) -> int:
    """
    Target rate for a conversion: 0 keeps the original; 48 kHz sources may
    go to any rate; anything else is never upsampled.
    """
    target = int(str(selected))
    if target == 0:
        return int(original)
    if int(original) == 48000:
        return target
    return min(int(original), target)


###########################################################################
##                             ZERO CROSSINGS                            ##
###########################################################################

def find_nearest_zero_crossing(buffer: SampleBuffer, position: int, direction: str = "both",
                               max_distance: Optional[int] = None,
                               bounds: Optional[Tuple[Optional[int], Optional[int]]] = None) -> int:
    """
    Index nearest `position` (on channel 0) whose amplitude is closest to
    zero, searching `direction` ('forward', 'backward' or 'both') up to
    `max_distance` frames. Ties go to the smaller distance, then the lower
    index. A position already at zero is returned as is.
    """
    if direction not in ("forward", "backward", "both"):
        raise ValueError(f"Unknown direction: {direction!r}")
    n = buffer.frame_count
    if n == 0:
        return 0
    data = buffer.channel(0)
    position = max(0, min(int(position), n - 1))
    if abs(float(data[position])) < ZERO_CROSSING_EPSILON:
        return position

    reach = n if max_distance is None else max(0, int(max_distance))
    lo = position if direction == "forward" else max(0, position - reach)
    hi = position if direction == "backward" else min(n - 1, position + reach)
    if bounds is not None:
        if bounds[0] is not None:
            lo = max(lo, int(bounds[0]))
        if bounds[1] is not None:
            hi = min(hi, int(bounds[1]))
    if lo > hi:
        return position

    idx = np.arange(lo, hi + 1)
    amp = np.abs(data[lo:hi + 1])
    # anything within epsilon is a crossing; distance decides between them
    amp = np.where(amp < ZERO_CROSSING_EPSILON, 0.0, amp)
    dist = np.abs(idx - position)
    best = np.lexsort((idx, dist, amp))[0]
    return int(idx[best])


@dataclass
class MarkerSnap:
    in_point: float
    out_point: float
    loop_start: Optional[float] = None
    loop_end: Optional[float] = None
    # (marker, original frame, adjusted frame)
    adjustments: List[Tuple[str, int, int]] = field(default_factory=list)


def snap_markers_to_zero_crossings(buffer: SampleBuffer, in_point: float, out_point: float,
                                   loop_start: Optional[float] = None, loop_end: Optional[float] = None,
                                   max_distance: int = 500) -> MarkerSnap:
    """Move in/out/loop markers (seconds) onto nearby zero crossings."""
    sr = buffer.sample_rate
    in_frame = int(math.floor(in_point * sr))
    out_frame = int(math.floor(out_point * sr))
    adjustments: List[Tuple[str, int, int]] = []

    def snap(name: str, frame: int, direction: str, bounds=None) -> int:
        adjusted = find_nearest_zero_crossing(buffer, frame, direction, max_distance, bounds)
        if adjusted != frame:
            adjustments.append((name, frame, adjusted))
        return adjusted

    new_in = snap("in_point", in_frame, "forward")
    new_out = snap("out_point", out_frame, "backward")
    result = MarkerSnap(in_point=new_in / sr, out_point=new_out / sr, adjustments=adjustments)
    # loop markers stay inside the original in/out region
    if loop_start is not None:
        result.loop_start = snap("loop_start", int(math.floor(loop_start * sr)), "both",
                                 (in_frame, out_frame)) / sr
    if loop_end is not None:
        result.loop_end = snap("loop_end", int(math.floor(loop_end * sr)), "both",
                               (in_frame, out_frame)) / sr
    return result


###########################################################################
##                               TRIMMING                                ##
###########################################################################

def cut_at_loop_end(buffer: SampleBuffer, loop_end: int, tail_samples: int = LOOP_END_PADDING) -> SampleBuffer:
    """Drop everything past `loop_end + tail_samples` frames."""
    if loop_end <= 0 or loop_end >= buffer.frame_count:
        return buffer
    cut = min(int(loop_end) + int(tail_samples), buffer.frame_count)
    return buffer.with_data(buffer.data[:, :cut].copy())

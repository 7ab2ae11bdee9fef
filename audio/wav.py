"""
RIFF/WAVE codec.

Reads PCM (8/16/24/32-bit) and IEEE float (32/64-bit) files, including
WAVE_FORMAT_EXTENSIBLE, into SampleBuffer; writes 16/24-bit PCM with an
optional `smpl` chunk carrying the root note and one forward loop.
"""
from __future__ import annotations
import logging
import math
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import numpy as np

from audio.buffer import SampleBuffer

logger = logging.getLogger(__name__)

HEADER_LENGTH = 44
SUPPORTED_BIT_DEPTHS = (16, 24)

FORMAT_PCM = 0x0001
FORMAT_IEEE_FLOAT = 0x0003
FORMAT_EXTENSIBLE = 0xFFFE

_FORMAT_NAMES = {FORMAT_PCM: "PCM", FORMAT_IEEE_FLOAT: "IEEE_FLOAT", FORMAT_EXTENSIBLE: "EXTENSIBLE"}

SMPL_CHUNK_SIZE = 60


class FormatError(ValueError):
    """Malformed or unsupported WAV container."""


class UnsupportedChannelsError(ValueError):
    pass


class UnsupportedBitDepthError(ValueError):
    pass


@dataclass(frozen=True)
class WavHeader:
    format: str
    format_code: int
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bit_depth: int
    data_size: int
    data_offset: int

    @property
    def frame_count(self) -> int:
        return self.data_size // self.block_align if self.block_align else 0


@dataclass(frozen=True)
class SampleLoop:
    """Root note and loop region (frames, end exclusive) from a `smpl` chunk."""
    root_note: int = 60
    loop_start: int = 0
    loop_end: int = 0


###########################################################################
##                            CHUNK SCANNING                             ##
###########################################################################

def _scan_chunks(data: bytes) -> Dict[bytes, Tuple[int, int]]:
    """
    Map chunk id -> (payload offset, payload size). First occurrence wins.
    Sizes running past the end of the input are clamped.
    """
    if len(data) < 12 or data[0:4] != b"RIFF" or data[8:12] != b"WAVE":
        raise FormatError("missing RIFF header")

    chunks: Dict[bytes, Tuple[int, int]] = {}
    offset = 12
    while offset + 8 <= len(data):
        chunk_id = data[offset:offset + 4]
        (size,) = struct.unpack_from("<I", data, offset + 4)
        start = offset + 8
        size = min(size, len(data) - start)
        chunks.setdefault(chunk_id, (start, size))
        # chunks are padded to an even length
        offset = start + size + (size & 1)
    return chunks


def parse_header(data: bytes) -> WavHeader:
    chunks = _scan_chunks(bytes(data))
    if b"fmt " not in chunks:
        raise FormatError("missing fmt chunk")
    if b"data" not in chunks:
        raise FormatError("missing data chunk")

    fmt_offset, fmt_size = chunks[b"fmt "]
    if fmt_size < 16:
        raise FormatError(f"fmt chunk too short ({fmt_size} bytes)")
    code, channels, sample_rate, byte_rate, block_align, bit_depth = struct.unpack_from(
        "<HHIIHH", data, fmt_offset)

    effective = code
    if code == FORMAT_EXTENSIBLE and fmt_size >= 40:
        # first two bytes of the sub-format GUID carry the real format code
        (effective,) = struct.unpack_from("<H", data, fmt_offset + 24)
    name = _FORMAT_NAMES.get(effective, f"0x{effective:04X}")

    data_offset, data_size = chunks[b"data"]
    return WavHeader(format=name, format_code=code, channels=channels,
                     sample_rate=sample_rate, byte_rate=byte_rate,
                     block_align=block_align, bit_depth=bit_depth,
                     data_size=data_size, data_offset=data_offset)


def parse_sample_loop(data: bytes) -> Optional[SampleLoop]:
    """Root note and first loop from the `smpl` chunk, or None without one."""
    chunks = _scan_chunks(bytes(data))
    if b"smpl" not in chunks:
        return None
    offset, size = chunks[b"smpl"]
    if size < 36:
        return None
    (root,) = struct.unpack_from("<I", data, offset + 12)
    (num_loops,) = struct.unpack_from("<I", data, offset + 28)
    if num_loops == 0 or size < 60:
        return SampleLoop(root_note=int(root))
    start, end = struct.unpack_from("<II", data, offset + 36 + 8)
    # stored end is inclusive
    return SampleLoop(root_note=int(root), loop_start=int(start), loop_end=int(end) + 1)


###########################################################################
##                                DECODE                                 ##
###########################################################################

def _int_scale(bits: int) -> float:
    # Same full-scale value the encoder quantizes with, so round trips are symmetric
    return float(2 ** (bits - 1) - 1)


def _decode_samples(raw: bytes, header: WavHeader) -> np.ndarray:
    bits = header.bit_depth
    if header.format == "PCM":
        if bits == 8:
            ints = np.frombuffer(raw, dtype=np.uint8).astype(np.float32) - 128.0
            return ints / 127.0
        if bits == 16:
            return np.frombuffer(raw, dtype="<i2").astype(np.float32) / _int_scale(16)
        if bits == 24:
            b = np.frombuffer(raw, dtype=np.uint8).reshape(-1, 3).astype(np.int32)
            ints = b[:, 0] | (b[:, 1] << 8) | (b[:, 2] << 16)
            ints = np.where(ints & 0x800000, ints - 0x1000000, ints)
            return ints.astype(np.float32) / _int_scale(24)
        if bits == 32:
            return (np.frombuffer(raw, dtype="<i4").astype(np.float64) / _int_scale(32)).astype(np.float32)
    elif header.format == "IEEE_FLOAT":
        if bits == 32:
            return np.frombuffer(raw, dtype="<f4").astype(np.float32)
        if bits == 64:
            return np.frombuffer(raw, dtype="<f8").astype(np.float32)
    else:
        raise FormatError(f"unsupported format: {header.format}")
    raise FormatError(f"unsupported bit depth: {bits} ({header.format})")


def decode(data: bytes) -> SampleBuffer:
    data = bytes(data)
    header = parse_header(data)
    if header.channels < 1:
        raise FormatError("invalid channel count: 0")
    bytes_per_sample = header.bit_depth // 8
    if bytes_per_sample == 0 or header.block_align != header.channels * bytes_per_sample:
        raise FormatError(f"unsupported bit depth: {header.bit_depth} ({header.format})")

    frames = header.frame_count
    raw = data[header.data_offset:header.data_offset + frames * header.block_align]
    samples = _decode_samples(raw, header)

    # deinterleave -> (channels, frames)
    planar = samples.reshape(frames, header.channels).T
    logger.debug(f"[WAV] decoded {frames} frames, {header.channels}ch, "
                 f"{header.bit_depth}-bit {header.format} @ {header.sample_rate} Hz")
    return SampleBuffer(header.sample_rate, np.ascontiguousarray(planar))


###########################################################################
##                                ENCODE                                 ##
###########################################################################

def _quantize(buffer: SampleBuffer, bit_depth: int) -> bytes:
    interleaved = np.clip(buffer.data.T, -1.0, 1.0).astype(np.float64)
    ints = np.round(interleaved * _int_scale(bit_depth)).astype("<i4").ravel(order="C")
    if bit_depth == 16:
        return ints.astype("<i2").tobytes()
    # 24-bit: low three bytes of each little-endian int32
    return ints.view(np.uint8).reshape(-1, 4)[:, :3].tobytes()


def _smpl_chunk(buffer: SampleBuffer, loop: SampleLoop) -> bytes:
    period_ns = int(round(1_000_000_000 / buffer.sample_rate))
    end = loop.loop_end if loop.loop_end > 0 else buffer.frame_count
    header = struct.pack("<9I", 0, 0, period_ns, int(loop.root_note), 0, 0, 0, 1, 0)
    # one forward loop; end stored inclusive
    loop_data = struct.pack("<6I", 0, 0, int(loop.loop_start), max(0, int(end) - 1), 0, 0)
    return b"smpl" + struct.pack("<I", SMPL_CHUNK_SIZE) + header + loop_data


def encode(buffer: SampleBuffer, bit_depth: int = 16, loop: Optional[SampleLoop] = None) -> bytes:
    if buffer.channels not in (1, 2):
        raise UnsupportedChannelsError(f"Expecting mono or stereo buffer, got {buffer.channels} channels")
    if bit_depth not in SUPPORTED_BIT_DEPTHS:
        raise UnsupportedBitDepthError(f"Unsupported bit depth: {bit_depth}")

    bytes_per_sample = bit_depth // 8
    block_align = buffer.channels * bytes_per_sample
    data_size = buffer.frame_count * block_align
    smpl = _smpl_chunk(buffer, loop) if loop is not None else b""

    fmt = struct.pack("<HHIIHH", FORMAT_PCM, buffer.channels, buffer.sample_rate,
                      buffer.sample_rate * block_align, block_align, bit_depth)
    out = b"".join([
        b"RIFF", struct.pack("<I", 36 + len(smpl) + data_size), b"WAVE",
        b"fmt ", struct.pack("<I", len(fmt)), fmt,
        smpl,
        b"data", struct.pack("<I", data_size),
        _quantize(buffer, bit_depth),
    ])
    return out


###########################################################################
##                              FILE HELPERS                             ##
###########################################################################

def read_wav(path: Union[str, Path]) -> Tuple[SampleBuffer, Optional[SampleLoop]]:
    data = Path(path).read_bytes()
    return decode(data), parse_sample_loop(data)


def write_wav(path: Union[str, Path], buffer: SampleBuffer, bit_depth: int = 16,
              loop: Optional[SampleLoop] = None) -> int:
    data = encode(buffer, bit_depth, loop)
    Path(path).write_bytes(data)
    logger.info(f"[WAV] wrote {path} ({len(data)} bytes)")
    return len(data)


def estimate_wav_size(buffer: SampleBuffer, sample_rate: Optional[int] = None,
                      channels: Optional[int] = None, bit_depth: int = 16) -> int:
    """Size of the file `encode` would produce after conversion, without a smpl chunk."""
    sr = sample_rate or buffer.sample_rate
    ch = channels or buffer.channels
    frames = math.ceil(round(buffer.duration * sr, 6))
    return HEADER_LENGTH + frames * ch * (bit_depth // 8)

import struct

import numpy as np
import pytest

from audio.buffer import SampleBuffer
from audio.wav import (FormatError, SampleLoop, UnsupportedBitDepthError, UnsupportedChannelsError,
                       decode, encode, estimate_wav_size, parse_header, parse_sample_loop,
                       read_wav, write_wav)


def chunk(chunk_id: bytes, payload: bytes) -> bytes:
    pad = b"\x00" if len(payload) % 2 else b""
    return chunk_id + struct.pack("<I", len(payload)) + payload + pad


def riff(*chunks: bytes) -> bytes:
    body = b"WAVE" + b"".join(chunks)
    return b"RIFF" + struct.pack("<I", len(body)) + body


def fmt(code=1, channels=1, sr=8000, bits=16) -> bytes:
    align = channels * bits // 8
    return chunk(b"fmt ", struct.pack("<HHIIHH", code, channels, sr, sr * align, align, bits))


def noise(channels: int, frames: int = 500, sr: int = 44100) -> SampleBuffer:
    rng = np.random.default_rng(7)
    return SampleBuffer(sr, rng.uniform(-1.0, 1.0, size=(channels, frames)))


@pytest.mark.parametrize("channels", [1, 2])
@pytest.mark.parametrize("bits,tol", [(16, 1 / 32767), (24, 3 / 2 ** 23)])
def test_round_trip_within_quantization(channels, bits, tol):
    src = noise(channels)
    out = decode(encode(src, bit_depth=bits))
    assert out.sample_rate == src.sample_rate
    assert out.channels == channels
    assert out.frame_count == src.frame_count
    assert np.allclose(out.data, src.data, atol=tol)


def test_full_scale_survives_round_trip():
    src = SampleBuffer(44100, np.array([1.0, -1.0, 0.0, 0.5]))
    out = decode(encode(src))
    assert out.data[0, 0] == pytest.approx(1.0)
    assert out.data[0, 1] == pytest.approx(-1.0)
    assert out.data[0, 2] == 0.0


def test_encode_clips_out_of_range():
    out = decode(encode(SampleBuffer(44100, np.array([2.0, -3.0]))))
    assert np.allclose(out.data, [[1.0, -1.0]])


def test_header_fields_are_consistent():
    src = noise(2, frames=100, sr=48000)
    data = encode(src, bit_depth=24)
    header = parse_header(data)
    assert header.format == "PCM"
    assert header.channels == 2
    assert header.sample_rate == 48000
    assert header.bit_depth == 24
    assert header.block_align == 6
    assert header.byte_rate == 48000 * 6
    assert header.data_size == 600
    assert header.frame_count == 100
    assert len(data) == 44 + 600
    (riff_size,) = struct.unpack_from("<I", data, 4)
    assert riff_size == 36 + header.data_size


def test_three_channels_rejected():
    with pytest.raises(UnsupportedChannelsError):
        encode(noise(3))


def test_32_bit_encode_rejected():
    with pytest.raises(UnsupportedBitDepthError):
        encode(noise(1), bit_depth=32)


def test_short_input_is_not_riff():
    with pytest.raises(FormatError, match="missing RIFF header"):
        parse_header(b"0123456789")


def test_wrong_magic_is_not_riff():
    data = bytearray(encode(noise(1)))
    data[8:12] = b"AVI "
    with pytest.raises(FormatError, match="missing RIFF header"):
        decode(bytes(data))


def test_missing_fmt_chunk():
    with pytest.raises(FormatError, match="missing fmt chunk"):
        parse_header(riff(chunk(b"data", b"\x00\x00")))


def test_missing_data_chunk():
    with pytest.raises(FormatError, match="missing data chunk"):
        parse_header(riff(fmt()))


def test_unknown_chunks_and_order_are_tolerated():
    samples = struct.pack("<3h", 0, 32767, -32767)
    data = riff(chunk(b"LIST", b"abc"), chunk(b"data", samples), chunk(b"junk", b"x" * 10), fmt())
    buf = decode(data)
    assert buf.sample_rate == 8000
    assert np.allclose(buf.data, [[0.0, 1.0, -1.0]])


def test_decode_8_bit_unsigned():
    buf = decode(riff(fmt(bits=8), chunk(b"data", bytes([128, 255, 1]))))
    assert np.allclose(buf.data, [[0.0, 1.0, -1.0]])


def test_decode_float32():
    samples = np.array([0.25, -0.5, 0.75, -1.0], dtype="<f4").tobytes()
    buf = decode(riff(fmt(code=3, channels=2, bits=32), chunk(b"data", samples)))
    assert buf.channels == 2
    assert buf.frame_count == 2
    assert np.allclose(buf.data, [[0.25, 0.75], [-0.5, -1.0]])


def test_decode_extensible_pcm():
    align = 2
    ext = struct.pack("<HHIIHH", 0xFFFE, 1, 8000, 8000 * align, align, 16)
    # cbSize, valid bits, channel mask, sub-format GUID (PCM)
    ext += struct.pack("<HHI", 22, 16, 4) + struct.pack("<H", 1) + b"\x00" * 14
    data = riff(chunk(b"fmt ", ext), chunk(b"data", struct.pack("<2h", 16384, -16384)))
    header = parse_header(data)
    assert header.format == "PCM"
    assert header.format_code == 0xFFFE
    assert np.allclose(decode(data).data, [[0.5, -0.5]], atol=1e-4)


def test_sample_loop_round_trip():
    src = noise(1, frames=1000)
    loop = SampleLoop(root_note=62, loop_start=100, loop_end=900)
    data = encode(src, loop=loop)
    assert parse_sample_loop(data) == loop

    header = parse_header(data)
    (riff_size,) = struct.unpack_from("<I", data, 4)
    assert riff_size == 36 + 68 + header.data_size
    assert decode(data).frame_count == 1000


def test_no_sample_loop_without_smpl_chunk():
    assert parse_sample_loop(encode(noise(1))) is None


def test_estimate_matches_encoded_size():
    src = noise(2, frames=441)
    assert estimate_wav_size(src) == len(encode(src))
    assert estimate_wav_size(src, bit_depth=24) == len(encode(src, bit_depth=24))


def test_estimate_after_conversion():
    src = noise(2, frames=100, sr=44100)
    assert estimate_wav_size(src, sample_rate=22050, channels=1) == 44 + 50 * 2


def test_read_write_files(tmp_path):
    src = noise(2, frames=200)
    path = tmp_path / "take.wav"
    written = write_wav(path, src, loop=SampleLoop(root_note=48, loop_start=10, loop_end=150))
    assert path.stat().st_size == written

    buf, loop = read_wav(path)
    assert buf.frame_count == 200
    assert loop == SampleLoop(root_note=48, loop_start=10, loop_end=150)

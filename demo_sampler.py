import asyncio
import logging
import sys

from audio.device import DeviceProvider
from audio.engine import SoundDevicePlayback
from audio.transforms import ConversionOptions, convert_format
from audio.wav import read_wav
from midi.input import start_midi_listener
from routing.bus import EventBus
from sampler.engine import PlayOptions, VoiceEngine
from sampler.envelopes.adsr import ADSR
from sampler.midi import SamplerMidiAdapter
from sampler.voice import PlayMode
from sequencing.clock import Clock

SR = 44100
BLOCK = 256


async def main(path: str):
    buffer, loop = read_wav(path)
    src_sr = buffer.sample_rate
    # audition at device rate, peak at -1 dBFS
    buffer = await convert_format(buffer, ConversionOptions(normalize=True, normalize_level_db=-1.0,
                                                            sample_rate=SR, sample_name=path))
    root = loop.root_note if loop else 60

    device = SoundDevicePlayback(sr=SR, blocksize=BLOCK, channels=2)
    engine = VoiceEngine(DeviceProvider.of(device))
    options = PlayOptions(
        play_mode=PlayMode.POLY,
        adsr=ADSR(attack=2000, decay=6000, sustain=24000, release=9000),
        loop_on_release=loop is not None and loop.loop_end > 0,
        loop_start=loop.loop_start / src_sr if loop else 0.0,
        loop_end=loop.loop_end / src_sr if loop and loop.loop_end else None,
    )
    midi_bus = EventBus()
    adapter = SamplerMidiAdapter(engine, buffer, root_note=root, options=options)

    device.start_stream()
    clock = Clock(interval=0.005)
    clock.start(engine.tick)
    start_midi_listener(midi_bus)

    print("Play your keyboard! (Ctrl+C to quit)")
    try:
        while True:
            await adapter.drain(midi_bus)
            await asyncio.sleep(0.002)
    finally:
        engine.stop_all()
        clock.stop()
        device.stop_stream()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    if len(sys.argv) < 2:
        print("usage: python demo_sampler.py <sample.wav>")
        sys.exit(1)
    try:
        asyncio.run(main(sys.argv[1]))
    except KeyboardInterrupt:
        print("\nStopping…")

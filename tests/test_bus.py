import asyncio

from midi.messages import NoteOn
from routing.bus import EventBus
from sampler.engine import VoiceEngine
from sampler.voice import VoiceFinished


def test_drain_in_order_and_limited():
    bus = EventBus()
    for note in range(5):
        bus.post(NoteOn(note, 100))
    assert [e.note for e in bus.drain(3)] == [0, 1, 2]
    assert [e.note for e in bus.drain()] == [3, 4]
    assert bus.drain() == []


def test_offer_drops_when_full():
    bus = EventBus(maxsize=1)
    assert bus.offer(VoiceFinished("a", 0.0, "ended"))
    assert not bus.offer(VoiceFinished("b", 0.0, "ended"))
    assert bus.dropped == 1
    assert bus.drain() == [VoiceFinished("a", 0.0, "ended")]


def test_full_bus_does_not_break_engine(device, tone):
    engine = VoiceEngine(device, bus=EventBus(maxsize=1))
    assert asyncio.run(engine.play_note(tone, "a")) == "a"
    engine.release_note("a", force_stop=True)
    assert engine.active_voice_count() == 0
    assert engine.bus.dropped == 1

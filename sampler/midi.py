from dataclasses import replace
from typing import Optional, Set

from audio.buffer import SampleBuffer
from audio.dsp import semitones_to_rate
from midi.messages import NoteOn, NoteOff, CC
from routing.bus import EventBus
from sampler.engine import PlayOptions, VoiceEngine

CC_SUSTAIN = 64
CC_ALL_SOUND_OFF = 120
CC_ALL_NOTES_OFF = 123


class SamplerMidiAdapter:
    """
    Plays one sample chromatically from MIDI notes: the rate is
    2^((note - root_note)/12). Voice ids are "<prefix><note>-<n>", so a
    NoteOff releases every voice of that note. Sustain pedal supported.
    """

    def __init__(self, engine: VoiceEngine, buffer: SampleBuffer, root_note: int = 60,
                 options: Optional[PlayOptions] = None, id_prefix: str = "midi-"):
        self.engine = engine
        self.buffer = buffer
        self.root_note = int(root_note)
        self.options = options or PlayOptions()
        self.id_prefix = id_prefix
        self._counter = 0
        self._sustain = False
        self._pending_release: Set[int] = set()

    def note_pattern(self, note: int) -> str:
        return f"{self.id_prefix}{int(note)}-"

    async def note_on(self, note: int, velocity: int) -> Optional[str]:
        self._counter += 1
        self._pending_release.discard(note)
        opts = replace(self.options,
                       velocity=max(0, min(127, int(velocity))),
                       playback_rate=semitones_to_rate(int(note) - self.root_note))
        return await self.engine.play_note(self.buffer, f"{self.note_pattern(note)}{self._counter}", opts)

    def note_off(self, note: int) -> None:
        if self._sustain:
            self._pending_release.add(note)
            return
        self.engine.release_note(self.note_pattern(note))

    def cc(self, control: int, value: int) -> None:
        if control == CC_ALL_SOUND_OFF:
            self._pending_release.clear()
            self.engine.stop_all()
        elif control == CC_ALL_NOTES_OFF:
            self._pending_release.clear()
            self.engine.release_note(f"{self.id_prefix}*")
        elif control == CC_SUSTAIN:
            pedal = value >= 64
            if self._sustain and not pedal:
                for note in list(self._pending_release):
                    self.engine.release_note(self.note_pattern(note))
                self._pending_release.clear()
            self._sustain = pedal

    async def handle(self, e: object) -> None:
        if isinstance(e, NoteOn):
            await self.note_on(e.note, e.velocity)
        elif isinstance(e, NoteOff):
            self.note_off(e.note)
        elif isinstance(e, CC):
            self.cc(e.control, e.value)

    async def drain(self, bus: EventBus) -> int:
        events = bus.drain()
        for e in events:
            await self.handle(e)
        return len(events)

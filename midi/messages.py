from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class NoteOn:
    note: int
    velocity: int
    channel: int = 0


@dataclass(frozen=True)
class NoteOff:
    note: int
    velocity: int = 0
    channel: int = 0


@dataclass(frozen=True)
class CC:
    control: int
    value: int
    channel: int = 0


MidiEvent = Union[NoteOn, NoteOff, CC]


def from_mido(msg) -> Optional[MidiEvent]:
    """
    Translate a mido message into a bus event; None for anything the
    sampler ignores. NoteOn with velocity 0 counts as NoteOff.
    """
    channel = getattr(msg, "channel", 0)
    if msg.type == "note_on" and msg.velocity > 0:
        return NoteOn(msg.note, msg.velocity, channel)
    if msg.type == "note_off" or (msg.type == "note_on" and msg.velocity == 0):
        return NoteOff(msg.note, getattr(msg, "velocity", 0), channel)
    if msg.type == "control_change":
        return CC(msg.control, msg.value, channel)
    return None

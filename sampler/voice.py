"""
One sounding note and its lifecycle.

A Voice is an immutable record. `transition(voice, command, now)` returns
the next record plus the side effects the engine must carry out, so every
path to FINISHED goes through the same place.
"""
from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Any, List, Optional, Tuple

from sampler.envelopes.adsr import ADSR, EnvelopePhase, EnvelopeTimes, held_level, map_adsr, phase_at


class PlayMode(Enum):
    POLY = "poly"
    MONO = "mono"
    LEGATO = "legato"


@dataclass(frozen=True)
class LoopSettings:
    enabled: bool = False
    on_release: bool = False
    start: float = 0.0      # seconds
    end: float = 0.0        # seconds


class Command(Enum):
    ADVANCE = auto()        # clock moved; update attack/decay/sustain phase
    RELEASE = auto()        # note-off
    FORCE_STOP = auto()     # stop now, no release
    END = auto()            # playback ran out or release finished
    FAIL = auto()           # device rejected a command


class Effect(Enum):
    CANCEL_PENDING = auto()     # drop still-scheduled attack/decay automation
    SCHEDULE_RELEASE = auto()   # issue release curve and its cleanup
    STOP_SOURCE = auto()
    DISCONNECT = auto()
    REMOVE = auto()


_TEARDOWN = [Effect.STOP_SOURCE, Effect.DISCONNECT, Effect.REMOVE]


@dataclass(frozen=True)
class Voice:
    id: str
    adsr: ADSR
    start_time: float
    velocity: int = 127
    phase: EnvelopePhase = EnvelopePhase.ATTACK
    release_time: Optional[float] = None
    loop: LoopSettings = LoopSettings()
    playback_rate: float = 1.0
    graph: Any = field(default=None, compare=False, repr=False)

    @property
    def times(self) -> EnvelopeTimes:
        return map_adsr(self.adsr)

    @property
    def peak(self) -> float:
        return max(0, min(127, self.velocity)) / 127.0

    @property
    def finished(self) -> bool:
        return self.phase == EnvelopePhase.FINISHED

    def held_phase(self, now: float) -> EnvelopePhase:
        return phase_at(self.times, now - self.start_time)

    def level_at(self, now: float) -> float:
        """Gain the attack/decay/sustain automation has reached at `now`."""
        return self.peak * held_level(self.times, now - self.start_time)


_HELD = (EnvelopePhase.ATTACK, EnvelopePhase.DECAY, EnvelopePhase.SUSTAIN)


def transition(voice: Voice, command: Command, now: float) -> Tuple[Voice, List[Effect]]:
    if voice.phase == EnvelopePhase.FINISHED:
        return voice, []

    if command == Command.ADVANCE:
        if voice.phase in _HELD:
            phase = voice.held_phase(now)
            if phase.value > voice.phase.value:
                return replace(voice, phase=phase), []
        return voice, []

    if command == Command.RELEASE:
        if voice.phase == EnvelopePhase.RELEASE:
            return voice, []
        effects = []
        if voice.held_phase(now) in (EnvelopePhase.ATTACK, EnvelopePhase.DECAY):
            effects.append(Effect.CANCEL_PENDING)
        effects.append(Effect.SCHEDULE_RELEASE)
        return replace(voice, phase=EnvelopePhase.RELEASE, release_time=now), effects

    # FORCE_STOP, END, FAIL
    return replace(voice, phase=EnvelopePhase.FINISHED), list(_TEARDOWN)


###########################################################################
##                            NOTIFICATIONS                              ##
###########################################################################

@dataclass(frozen=True)
class VoiceStarted:
    voice_id: str
    time: float


@dataclass(frozen=True)
class VoiceReleased:
    voice_id: str
    time: float


@dataclass(frozen=True)
class VoiceFinished:
    voice_id: str
    time: float
    reason: str

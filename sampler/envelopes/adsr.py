import numpy as np
from dataclasses import dataclass
from enum import Enum, auto

# Sampler parameter codes are 15-bit
MAX_CODE = 32767
# Longest attack/decay/release stage, seconds
MAX_STAGE_TIME = 30.0

# Curve shapes; part of the instrument's sound, keep as is
ATTACK_FACTOR = 1.5
DECAY_FACTOR = 2.0
RELEASE_FACTOR = 2.0
CURVE_POINTS = 50


class EnvelopePhase(Enum):
    ATTACK = auto()
    DECAY = auto()
    SUSTAIN = auto()
    RELEASE = auto()
    FINISHED = auto()


@dataclass(frozen=True)
class ADSR:
    """
    Amplitude envelope as sampler codes in [0, 32767].
    attack/decay/release are times, sustain is a level.
    """
    attack: int = 0
    decay: int = 0
    sustain: int = MAX_CODE
    release: int = 0

    def __post_init__(self):
        for name in ("attack", "decay", "sustain", "release"):
            v = getattr(self, name)
            if not 0 <= int(v) <= MAX_CODE:
                raise ValueError(f"ADSR {name} must be in [0, {MAX_CODE}], got {v}")
            object.__setattr__(self, name, int(v))


@dataclass(frozen=True)
class EnvelopeTimes:
    attack_time: float
    decay_time: float
    sustain_level: float
    release_time: float


def map_adsr(adsr: ADSR) -> EnvelopeTimes:
    # quadratic for times: finer control at the short end
    return EnvelopeTimes(
        attack_time=(adsr.attack / MAX_CODE) ** 2 * MAX_STAGE_TIME,
        decay_time=(adsr.decay / MAX_CODE) ** 2 * MAX_STAGE_TIME,
        sustain_level=adsr.sustain / MAX_CODE,
        release_time=(adsr.release / MAX_CODE) ** 2 * MAX_STAGE_TIME,
    )


def exponential_curve(start: float, end: float, factor: float, num_points: int = CURVE_POINTS) -> np.ndarray:
    """
    num_points+1 values of start + (end-start)*(1 - e^(-factor*t)), t in [0, 1].
    Fast start, slow finish.
    """
    t = np.linspace(0.0, 1.0, num_points + 1)
    return start + (end - start) * (1.0 - np.exp(-factor * t))


def curve_value(curve: np.ndarray, fraction: float) -> float:
    """Value of a curve spread over [0, 1], linearly interpolated between points."""
    fraction = min(1.0, max(0.0, fraction))
    n = len(curve)
    return float(np.interp(fraction * (n - 1), np.arange(n), curve))


###########################################################################
##                          LEVELS OVER TIME                             ##
###########################################################################

def phase_at(times: EnvelopeTimes, elapsed: float) -> EnvelopePhase:
    """Phase of a held note `elapsed` seconds after note-on."""
    if elapsed < times.attack_time:
        return EnvelopePhase.ATTACK
    if elapsed < times.attack_time + times.decay_time:
        return EnvelopePhase.DECAY
    return EnvelopePhase.SUSTAIN


def held_level(times: EnvelopeTimes, elapsed: float) -> float:
    """Gain of a held note `elapsed` seconds after note-on (attack, decay, sustain)."""
    if elapsed < 0:
        return 0.0
    if times.attack_time > 0 and elapsed < times.attack_time:
        return curve_value(exponential_curve(0.0, 1.0, ATTACK_FACTOR), elapsed / times.attack_time)
    elapsed -= times.attack_time
    if times.decay_time > 0 and elapsed < times.decay_time:
        curve = exponential_curve(1.0, times.sustain_level, DECAY_FACTOR)
        return curve_value(curve, elapsed / times.decay_time)
    return times.sustain_level


def release_level(start_level: float, release_time: float, elapsed: float) -> float:
    """Gain `elapsed` seconds into a release that began at `start_level`."""
    if elapsed < 0:
        return start_level
    if release_time <= 0:
        return 0.0
    curve = exponential_curve(start_level, 0.0, RELEASE_FACTOR)
    return curve_value(curve, elapsed / release_time)

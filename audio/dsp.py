import math
from typing import Tuple
import numpy as np

_EPS = 1e-12


def db_to_lin(db: float) -> float:
    return 10.0 ** (db / 20.0)


def lin_to_db(x: float) -> float:
    return 20.0 * math.log10(max(_EPS, x))


def peak(data: np.ndarray) -> float:
    # Peak absolute value across every channel
    return float(np.max(np.abs(data))) if data.size else 0.0


def pan_gains(pan: float) -> Tuple[float, float]:
    """
    Equal-power pan law. pan ∈ [-1..+1] -> (gL, gR).
    """
    p = max(-1.0, min(1.0, pan))
    # map [-1..+1] -> [0..1] angle
    angle = (p + 1.0) * 0.25 * np.pi  # 0..pi/2
    gL = np.cos(angle)
    gR = np.sin(angle)
    return float(gL), float(gR)


def semitones_to_rate(semitones: float) -> float:
    return 2.0 ** (semitones / 12.0)

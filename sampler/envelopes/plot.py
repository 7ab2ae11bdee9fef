from typing import Optional
import matplotlib.pyplot as plt
import numpy as np

from sampler.envelopes.adsr import ADSR, held_level, map_adsr, release_level


def render_envelope(adsr: ADSR, t_total: float, t_gate_off: Optional[float] = None,
                    sr: int = 1000) -> np.ndarray:
    """
    Gain the voice engine schedules for a note held from 0s until
    `t_gate_off` (or the whole window), sampled at `sr`.
    """
    assert t_total > 0.0
    times = map_adsr(adsr)
    t = np.arange(int(t_total * sr)) / sr

    if t_gate_off is None:
        return np.array([held_level(times, x) for x in t], dtype=np.float32)

    off = min(max(0.0, t_gate_off), t_total)
    start_level = held_level(times, off)
    return np.array([held_level(times, x) if x < off else release_level(start_level, times.release_time, x - off)
                     for x in t], dtype=np.float32)


def plot_envelope(adsr: ADSR, t_total: float, t_gate_off: Optional[float] = None, sr: int = 1000):
    """Plot from gate-on for `t_total` seconds, with optional gate-off at `t_gate_off`."""
    y = render_envelope(adsr, t_total, t_gate_off, sr)
    t = np.arange(len(y)) / sr

    fig, ax = plt.subplots(figsize=(8, 3))
    ax.plot(t, y, lw=1.2)
    ax.set_ylim(-0.05, 1.05)
    ax.set_xlabel("Time [s]")
    ax.set_ylabel("Gain")
    title = f"ADSR {adsr.attack}/{adsr.decay}/{adsr.sustain}/{adsr.release} (gate-on @0s"
    if t_gate_off is not None:
        title += f", gate-off @{t_gate_off:.3f}s"
    title += f", duration {t_total:.3f}s)"
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    fig.tight_layout()
    return fig, ax

"""Matplotlib helpers used by the demo script.

No specific style is enforced so that labs can plug this into their own
figure pipelines.
"""

from __future__ import annotations

import numpy as np
import matplotlib.pyplot as plt


def plot_csd_fit(freqs, csd, predicted=None):
    """Grid of |CSD| per channel pair, empirical (dots) and predicted (line)."""
    freqs = np.asarray(freqs, float)
    csd = np.asarray(csd)
    n = csd.shape[1]
    fig, ax = plt.subplots(n, n, sharex=True, figsize=(2.5 * n, 2.2 * n), squeeze=False)
    for i in range(n):
        for j in range(n):
            a = ax[i, j]
            a.plot(freqs, np.abs(csd[:, i, j]), ".", ms=3, label="empirical")
            if predicted is not None:
                a.plot(freqs, np.abs(np.asarray(predicted)[:, i, j]), lw=1, label="predicted")
            if i == n - 1:
                a.set_xlabel("Frequency (Hz)")
            if j == 0:
                a.set_ylabel(f"|S| row {i}")
    ax[0, 0].legend(fontsize="small")
    fig.tight_layout()
    return fig


def plot_free_energy(free_energy, accepted=None, ax=None):
    """Free energy per iteration; rejected steps marked in red."""
    F = np.asarray(free_energy, float)
    if ax is None:
        fig, ax = plt.subplots(figsize=(6, 3))
    else:
        fig = ax.figure
    it = np.arange(1, F.size + 1)
    ax.plot(it, F, "-", color="k", lw=1)
    if accepted is not None:
        accepted = np.asarray(accepted, bool)
        ax.plot(it[~accepted], F[~accepted], "x", color="red", label="rejected")
        if np.any(~accepted):
            ax.legend()
    ax.set_xlabel("Iteration")
    ax.set_ylabel("Free energy")
    ax.grid(True, ls=":", lw=0.5)
    fig.tight_layout()
    return fig

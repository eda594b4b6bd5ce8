"""Quadratic Savitzky–Golay style smoothing of glucose readings.

Each reading is replaced by the value at its own timestamp of a least-squares
quadratic fitted over the ``2w+1`` time-ordered readings centred on it.  Near
the ends of a run the window is truncated to the readings that exist, and the
fit degrades to a line (two points) or the raw value (one point).

The regression uses real timestamps (minutes) rather than sample indices, so
slightly irregular spacing is handled.  A run of readings is split wherever
two neighbours are further apart than ``max_gap``; no fit ever spans a gap.

Pure functions only.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta
from typing import Sequence

import numpy as np

from src.cgm.base import GlucoseReading

logger = logging.getLogger("glucolink.cgm.smoothing")

_POLY_ORDER = 2


def _fit_at_origin(xs: np.ndarray, ys: np.ndarray) -> float:
    """Least-squares polynomial (degree ≤ 2) evaluated at x = 0.

    Args:
        xs: Abscissae, already centred on the target point.
        ys: Ordinates.

    Returns:
        The fitted value at x = 0.
    """
    degree = min(_POLY_ORDER, len(xs) - 1)
    if degree == 0:
        return float(ys.mean())
    coeffs = np.polyfit(xs, ys, degree)
    return float(np.polyval(coeffs, 0.0))


def _smooth_run(run: list[GlucoseReading], frame_size: int) -> list[float]:
    """Smooth one gap-free, time-ordered run and return the new values."""
    start = run[0].timestamp
    minutes = np.array([(r.timestamp - start).total_seconds() / 60.0 for r in run])
    values = np.array([r.value for r in run], dtype=float)

    smoothed: list[float] = []
    for i in range(len(run)):
        lo = max(0, i - frame_size)
        hi = min(len(run), i + frame_size + 1)
        smoothed.append(_fit_at_origin(minutes[lo:hi] - minutes[i], values[lo:hi]))
    return smoothed


def _split_runs(
    ordered: list[GlucoseReading], max_gap: timedelta | None
) -> list[list[GlucoseReading]]:
    if not ordered:
        return []
    runs: list[list[GlucoseReading]] = [[ordered[0]]]
    for prev, cur in zip(ordered, ordered[1:]):
        if max_gap is not None and cur.timestamp - prev.timestamp > max_gap:
            runs.append([cur])
        else:
            runs[-1].append(cur)
    return runs


def smooth_savitzky_golay_quadratic(
    readings: Sequence[GlucoseReading],
    frame_size: int,
    max_gap: timedelta | None = None,
) -> list[GlucoseReading]:
    """Apply one quadratic smoothing pass.

    Args:
        readings:   Readings in any order.
        frame_size: Half-width ``w`` of the window (``2w+1`` readings).
        max_gap:    Neighbour spacing above which runs are smoothed separately.

    Returns:
        A list the same length and order as ``readings``; only ``value`` differs.
    """
    if frame_size < 0:
        raise ValueError(f"frame_size must be >= 0, got {frame_size}")
    order = sorted(range(len(readings)), key=lambda i: readings[i].timestamp)
    ordered = [readings[i] for i in order]

    smoothed_values: list[float] = []
    for run in _split_runs(ordered, max_gap):
        smoothed_values.extend(_smooth_run(run, frame_size))

    out: list[GlucoseReading] = list(readings)
    for position, value in zip(order, smoothed_values):
        out[position] = replace(readings[position], value=value)
    return out


def smooth_glucose(
    readings: Sequence[GlucoseReading],
    frame_size: int,
    passes: int,
    max_gap: timedelta | None = None,
) -> list[GlucoseReading]:
    """Run ``passes`` consecutive smoothing passes over ``readings``.

    Args:
        readings:   Readings in any order.
        frame_size: Half-width of the window.
        passes:     Number of repeat passes (≥ 1).
        max_gap:    See ``smooth_savitzky_golay_quadratic``.

    Returns:
        Smoothed readings with identical length, order, ids and timestamps.
    """
    logger.debug(
        "Smoothing %d readings: frame=%d passes=%d", len(readings), frame_size, passes
    )
    out = list(readings)
    for _ in range(passes):
        out = smooth_savitzky_golay_quadratic(out, frame_size, max_gap)
    return out

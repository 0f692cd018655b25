"""
transition_model.py -- Empirical Markov transition matrix over state labels.

Lifecycle:
    1. Training: TransitionCounter.observe(current) once per tick
    2. End of run: compile_matrix(counts) -> save_matrix(path, matrix)
    3. Trading startup: load_matrix(path) -> read-only matrix
    4. Each tick: ranked_candidates(matrix, current_state, min_prob)

Small-sample policy:
rows whose total count is <= N get the SAME low probability for every
observed destination, regardless of count.  Those rows do not sum to 1.
It is a blunt guard against trusting a state seen only a handful of times;
whether a proper prior was intended is still an open question.
"""

from __future__ import annotations

import csv
import logging
import math
import os
from collections import Counter
from collections.abc import Iterable, Mapping

import numpy as np

log = logging.getLogger(__name__)

HEADER = ("From", "To", "Probability")

Matrix = dict[str, dict[str, float]]


class MatrixLoadError(ValueError):
    """Persisted matrix is malformed; the whole load is rejected."""


# ---------------------------------------------------------------------------
# Training counts
# ---------------------------------------------------------------------------

class TransitionCounter:
    """(from_state, to_state) -> count for one instrument."""

    def __init__(self) -> None:
        self.counts: Counter[tuple[str, str]] = Counter()
        self.previous: str | None = None

    def observe(self, state: object) -> bool:
        """
        Record a tick.  Returns True if a transition was counted.

        The first tick only seeds `previous`.
        """
        current = str(state)
        counted = False
        if self.previous is not None:
            self.counts[(self.previous, current)] += 1
            counted = True
        self.previous = current
        return counted

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def items(self):
        return self.counts.items()


def merge_counts(counters: Iterable[TransitionCounter]) -> Counter[tuple[str, str]]:
    merged: Counter[tuple[str, str]] = Counter()
    for counter in counters:
        merged.update(counter.counts)
    return merged


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------

def compile_matrix(
    counts: Mapping[tuple[str, str], int] | Iterable[tuple[tuple[str, str], int]],
    small_sample_cutoff: int = 3,
    sparse_prob: float = 0.05,
) -> Matrix:
    """
    Turn transition counts into probabilities.

    Rows with total > small_sample_cutoff are normalized frequencies.
    Rows with total <= small_sample_cutoff assign sparse_prob to every
    observed destination.  Rows with total 0 are empty.
    """
    pairs = counts.items() if isinstance(counts, Mapping) else counts

    grouped: dict[str, dict[str, int]] = {}
    for (from_state, to_state), n in pairs:
        n = int(n)
        if n < 0:
            raise ValueError(f"negative transition count for {from_state}->{to_state}: {n}")
        row = grouped.setdefault(from_state, {})
        row[to_state] = row.get(to_state, 0) + n

    matrix: Matrix = {}
    for from_state, row in grouped.items():
        total = sum(row.values())
        if total <= 0:
            matrix[from_state] = {}
        elif total > small_sample_cutoff:
            matrix[from_state] = {to: n / total for to, n in row.items()}
        else:
            matrix[from_state] = {to: float(sparse_prob) for to in row}
    return matrix


def row_sums(matrix: Matrix) -> dict[str, float]:
    return {from_state: sum(row.values()) for from_state, row in matrix.items()}


def to_dense(matrix: Matrix) -> tuple[list[str], np.ndarray]:
    """
    Dense view: (states, P) with P[i, j] = matrix[states[i]][states[j]].

    States are every label seen as a source or destination, in first-seen order.
    """
    states: list[str] = []
    seen: set[str] = set()
    for from_state, row in matrix.items():
        for s in (from_state, *row.keys()):
            if s not in seen:
                seen.add(s)
                states.append(s)
    index = {s: i for i, s in enumerate(states)}
    dense = np.zeros((len(states), len(states)), dtype=float)
    for from_state, row in matrix.items():
        for to_state, p in row.items():
            dense[index[from_state], index[to_state]] = p
    return states, dense


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------

def ranked_candidates(
    matrix: Matrix | None,
    current_state: object,
    min_prob: float = 0.3,
) -> list[tuple[str, float]]:
    """
    Destinations from current_state, self-transition excluded, probability
    strictly above min_prob, highest first (ties keep file order).
    """
    if not matrix:
        return []
    current = str(current_state)
    row = matrix.get(current)
    if not row:
        return []
    out = [(to, p) for to, p in row.items() if to != current and p > min_prob]
    out.sort(key=lambda kv: kv[1], reverse=True)
    return out


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def save_matrix(path: str, matrix: Matrix) -> int:
    """Write the matrix as From,To,Probability rows.  Returns rows written."""
    folder = os.path.dirname(path)
    if folder:
        os.makedirs(folder, exist_ok=True)
    rows = 0
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f, lineterminator="\n")
        writer.writerow(HEADER)
        for from_state, row in matrix.items():
            for to_state, p in row.items():
                writer.writerow([from_state, to_state, f"{p:.4f}"])
                rows += 1
    log.info("saved transition matrix: %d states, %d rows -> %s", len(matrix), rows, path)
    return rows


def load_matrix(path: str) -> Matrix | None:
    """
    Read a matrix written by save_matrix.

    Missing file -> None (no model).  A missing header, a duplicate
    From,To pair or any malformed data row raises
    MatrixLoadError; nothing partial is ever returned.
    """
    if not os.path.exists(path):
        log.info("no transition matrix at %s; trading disabled", path)
        return None

    matrix: Matrix = {}
    rows = 0
    with open(path, "r", encoding="utf-8", newline="") as f:
        reader = csv.reader(f)
        header = next(reader, None)
        if header is None or tuple(p.strip() for p in header) != HEADER:
            raise MatrixLoadError(f"{path}:1: expected header {','.join(HEADER)}, got {header!r}")
        for line_no, parts in enumerate(reader, start=2):
            if not parts or all(not p.strip() for p in parts):
                continue
            if len(parts) != 3:
                raise MatrixLoadError(f"{path}:{line_no}: expected 3 columns, got {len(parts)}")
            from_state, to_state, raw_prob = (p.strip() for p in parts)
            if not from_state or not to_state:
                raise MatrixLoadError(f"{path}:{line_no}: empty state label")
            try:
                prob = float(raw_prob)
            except ValueError as e:
                raise MatrixLoadError(f"{path}:{line_no}: bad probability {raw_prob!r}") from e
            if not math.isfinite(prob) or prob < 0.0 or prob > 1.0:
                raise MatrixLoadError(f"{path}:{line_no}: probability out of range: {prob}")
            row = matrix.setdefault(from_state, {})
            if to_state in row:
                raise MatrixLoadError(f"{path}:{line_no}: duplicate transition {from_state}->{to_state}")
            row[to_state] = prob
            rows += 1

    log.info("loaded transition matrix: %d states, %d rows from %s", len(matrix), rows, path)
    return matrix

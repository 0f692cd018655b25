#!/usr/bin/env python3
from __future__ import annotations

import argparse
from pathlib import Path
import sys

import numpy as np

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import config
import transition_model as tm


def _print_summary(matrix: tm.Matrix) -> None:
    sums = tm.row_sums(matrix)
    states, dense = tm.to_dense(matrix)
    sparse_rows = sum(1 for s in sums.values() if abs(s - 1.0) > 1e-3)
    print(f"{len(matrix)} source states, {len(states)} distinct states, {int(np.count_nonzero(dense))} transitions")
    print(f"{sparse_rows} rows do not sum to 1 (small-sample rows)")

    stay = {s: matrix[s].get(s, 0.0) for s in matrix}
    sticky = sorted(stay.items(), key=lambda kv: kv[1], reverse=True)[:5]
    if sticky:
        print("\nMost persistent states:")
        for state, p in sticky:
            print(f"  {state:<24} stay={p:.4f}")


def _print_state(matrix: tm.Matrix, state: str, top: int, min_prob: float) -> None:
    row = matrix.get(state)
    if not row:
        print(f"{state}: no outgoing transitions")
        return
    total = sum(row.values())
    print(f"{state}: {len(row)} destinations, row sum {total:.4f}")
    for to_state, p in sorted(row.items(), key=lambda kv: kv[1], reverse=True)[:top]:
        marker = "*" if to_state != state and p > min_prob else " "
        print(f"  {marker} {to_state:<24} {p:.4f}")

    candidates = tm.ranked_candidates(matrix, state, min_prob)
    print(f"\n{len(candidates)} tradeable candidates above {min_prob:.2f}")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Inspect a persisted From,To,Probability transition matrix."
    )
    parser.add_argument(
        "file",
        nargs="?",
        default=config.TRANSITION_FILE,
        help=f"Transition matrix CSV (default: {config.TRANSITION_FILE})",
    )
    parser.add_argument(
        "--state",
        type=str,
        default=None,
        help="Show the outgoing row for one state label, e.g. Up_LT_Z1U_Z0D",
    )
    parser.add_argument(
        "--top",
        type=int,
        default=10,
        help="Destinations to list for --state (default: 10)",
    )
    parser.add_argument(
        "--min-prob",
        type=float,
        default=config.MIN_TRANSITION_PROB,
        help=f"Candidate threshold to highlight (default: {config.MIN_TRANSITION_PROB})",
    )
    args = parser.parse_args()

    if args.top <= 0:
        raise SystemExit("--top must be > 0")

    try:
        matrix = tm.load_matrix(args.file)
    except tm.MatrixLoadError as e:
        raise SystemExit(f"Malformed matrix: {e}")
    if matrix is None:
        raise SystemExit(f"Transition file not found: {args.file}")

    if args.state:
        _print_state(matrix, args.state, args.top, args.min_prob)
    else:
        _print_summary(matrix)


if __name__ == "__main__":
    main()

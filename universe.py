"""
universe.py -- Ticker universe loading.

List files are newline-delimited text; the first comma-separated column of
each non-blank line is the ticker (so exported CSVs with extra columns work).
"""

from __future__ import annotations

import logging
from typing import Iterable

log = logging.getLogger(__name__)


def read_first_column(path: str) -> list[str]:
    out: list[str] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            ticker = line.split(",")[0].strip()
            if ticker:
                out.append(ticker)
    return out


def load_universe(path: str, exclude_paths: Iterable[str] = ()) -> list[str]:
    """
    Tickers from `path` minus every ticker in the exclusion files.

    Order is preserved and duplicates are dropped.
    """
    tickers = read_first_column(path)
    excluded: set[str] = set()
    for ex_path in exclude_paths:
        excluded.update(read_first_column(ex_path))

    seen: set[str] = set()
    out: list[str] = []
    for t in tickers:
        if t in excluded or t in seen:
            continue
        seen.add(t)
        out.append(t)
    log.info("universe: %d tickers from %s (%d dropped)", len(out), path, len(tickers) - len(out))
    return out

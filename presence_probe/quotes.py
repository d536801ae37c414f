"""Things to say: a fortune-style corpus used for ambient room chatter."""

from __future__ import annotations

import logging
import random
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .errors import QuoteCorpusError

DELIMITER = "%"


def parse_records(lines: Iterable[str], delimiter: str = DELIMITER) -> List[str]:
    """Split fortune text into records.

    A line holding only the delimiter ends a record. Line breaks inside a
    record collapse to single spaces; empty records are dropped.
    """
    records: List[str] = []
    current: List[str] = []
    for raw in lines:
        line = raw.rstrip("\r\n")
        if line.strip() == delimiter:
            if current:
                records.append(" ".join(current).strip())
            current = []
            continue
        current.append(line)
    if current:
        records.append(" ".join(current).strip())
    return [record for record in records if record]


class QuoteCorpus:
    def __init__(self, records: Sequence[str], source: Optional[Path] = None) -> None:
        self._records = tuple(records)
        self.source = source

    @classmethod
    def load(cls, path: Path, delimiter: str = DELIMITER) -> "QuoteCorpus":
        try:
            with path.open("r", encoding="utf-8", errors="replace") as fh:
                records = parse_records(fh, delimiter)
        except OSError as exc:
            raise QuoteCorpusError(f"cannot read quote file {path}: {exc}") from exc
        logging.info("loaded %d quotes from %s", len(records), path)
        return cls(records, source=path)

    def __len__(self) -> int:
        return len(self._records)

    def __getitem__(self, index: int) -> str:
        return self._records[index]

    def pick(self, rng: random.Random) -> str:
        if not self._records:
            raise QuoteCorpusError("quote corpus is empty")
        return self._records[rng.randrange(len(self._records))]

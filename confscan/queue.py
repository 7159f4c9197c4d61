"""
queue.py — energy-ordered candidate queue.
"""

from __future__ import annotations

import logging
from typing import Iterator, List, Optional, Sequence

from confscan.structure import Structure

logger = logging.getLogger("confscan")


class CandidateQueue:
    """Structures in ascending energy, each yielded exactly once.

    Equal energies keep their input order.  ``skip`` drops the N lowest
    entries; ``seed`` is a previously accepted set that pre-populates the
    reference list and the lowest-energy baseline.
    """

    def __init__(self, structures: Sequence[Structure], skip: int = 0,
                 seed: Optional[Sequence[Structure]] = None):
        ordered = sorted(structures, key=lambda s: (s.energy, s.index))
        skip = max(0, skip)
        if skip:
            logger.info("Skipping the %d lowest-energy structures", min(skip, len(ordered)))
        self._skipped: List[Structure] = ordered[:skip]
        self._ordered: List[Structure] = ordered[skip:]
        self.seed: List[Structure] = list(seed or [])

    def __iter__(self) -> Iterator[Structure]:
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    @property
    def skipped(self) -> List[Structure]:
        return list(self._skipped)

    @property
    def lowest_energy(self) -> Optional[float]:
        """Baseline from the seed set, or None until a candidate is accepted."""
        if not self.seed:
            return None
        return min(s.energy for s in self.seed)

"""
prefilter.py — coarse invariants that short-circuit the expensive comparator.

Thresholds start at zero and are learned from exact comparisons: a pair whose
true RMSD falls within ``scale_tight * rmsd_threshold`` raises the tight
thresholds to its coarse differences, a pair within ``scale_loose *
rmsd_threshold`` raises the loose ones.  Thresholds never go down.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from confscan.fingerprint import fingerprint_difference
from confscan.structure import Structure


class Verdict(Enum):
    DISTINCT = "distinct"
    DUPLICATE = "duplicate"
    UNDECIDED = "undecided"


def coarse_deltas(a: Structure, b: Structure) -> Tuple[float, float]:
    """(mean rotational-constant difference in MHz, fingerprint difference)."""
    rot_a = np.asarray(a.rotational_constants)
    rot_b = np.asarray(b.rotational_constants)
    diff_rot = float(np.abs(rot_a - rot_b).sum() / 3.0)
    if a.fingerprint.shape != b.fingerprint.shape:
        return diff_rot, float("inf")
    return diff_rot, fingerprint_difference(a.fingerprint, b.fingerprint)


@dataclass
class ThresholdState:
    rot_loose: float = 0.0
    rot_tight: float = 0.0
    fp_loose: float = 0.0
    fp_tight: float = 0.0

    @property
    def loose_calibrated(self) -> bool:
        return self.rot_loose > 0.0 or self.fp_loose > 0.0

    def classify(self, diff_rot: float, diff_fp: float) -> Verdict:
        if (self.loose_calibrated
                and diff_rot > self.rot_loose and diff_fp > self.fp_loose):
            return Verdict.DISTINCT
        if diff_rot < self.rot_tight and diff_fp < self.fp_tight:
            return Verdict.DUPLICATE
        return Verdict.UNDECIDED

    def observe(self, rmsd: float, diff_rot: float, diff_fp: float,
                rmsd_threshold: float, scale_tight: float,
                scale_loose: float) -> Optional[str]:
        """Raise the bucket *rmsd* falls in; returns "tight", "loose" or None."""
        if not (np.isfinite(rmsd) and np.isfinite(diff_rot) and np.isfinite(diff_fp)):
            return None
        if rmsd <= scale_tight * rmsd_threshold:
            self.rot_tight = max(self.rot_tight, diff_rot)
            self.fp_tight = max(self.fp_tight, diff_fp)
            return "tight"
        if rmsd <= scale_loose * rmsd_threshold:
            self.rot_loose = max(self.rot_loose, diff_rot)
            self.fp_loose = max(self.fp_loose, diff_fp)
            return "loose"
        return None

    def as_dict(self) -> dict:
        return asdict(self)

"""
structure.py — immutable conformer record and its coarse invariants.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
from rdkit import Chem
from scipy.spatial.distance import pdist

from confscan.fingerprint import FingerprintParams, persistence_image

HARTREE_TO_KJMOL = 2625.5
KCALMOL_TO_HARTREE = 1.0 / 627.509474

MIN_CONTACT_A = 0.5

# h / (8 pi^2) expressed in MHz * amu * Å^2
_ROT_CONST_MHZ = 505379.0

_PT = Chem.GetPeriodicTable()


def atomic_mass(symbol: str) -> float:
    return _PT.GetAtomicWeight(symbol)


def rotational_constants(elements: Sequence[str],
                         coords: np.ndarray) -> Tuple[float, float, float]:
    """Rotational constants A >= B >= C in MHz.

    Zero-moment axes (linear molecules, single atoms) give a constant of 0.
    """
    coords = np.asarray(coords, dtype=float)
    masses = np.array([atomic_mass(e) for e in elements])
    if len(coords) == 0 or masses.sum() <= 0:
        return (0.0, 0.0, 0.0)
    com = (coords * masses[:, None]).sum(axis=0) / masses.sum()
    r = coords - com
    inertia = np.zeros((3, 3))
    for m, (x, y, z) in zip(masses, r):
        inertia += m * np.array([
            [y * y + z * z, -x * y, -x * z],
            [-x * y, x * x + z * z, -y * z],
            [-x * z, -y * z, x * x + y * y],
        ])
    eig = np.linalg.eigvalsh(inertia)
    rot = [(_ROT_CONST_MHZ / e) if e > 3e-4 else 0.0 for e in eig]
    a, b, c = sorted(rot, reverse=True)
    return (float(a), float(b), float(c))


def geometry_is_sane(coords: np.ndarray) -> bool:
    """False for non-finite coordinates or atoms closer than 0.5 Å."""
    coords = np.asarray(coords, dtype=float)
    if not np.all(np.isfinite(coords)):
        return False
    if len(coords) < 2:
        return True
    return bool(pdist(coords).min() >= MIN_CONTACT_A)


@dataclass(frozen=True, eq=False)
class Structure:
    """One conformer: geometry, energy and derived coarse invariants.

    Built once at ingestion and never mutated afterwards; the coordinate and
    fingerprint arrays are flagged read-only.
    """
    index: int
    name: str
    elements: Tuple[str, ...]
    coordinates: np.ndarray
    energy: float
    rotational_constants: Tuple[float, float, float]
    fingerprint: np.ndarray
    valid: bool = True

    @property
    def atom_count(self) -> int:
        return len(self.elements)

    @property
    def heavy_atom_indices(self) -> Tuple[int, ...]:
        return tuple(i for i, e in enumerate(self.elements) if e != "H")

    @classmethod
    def from_geometry(
        cls,
        index: int,
        name: str,
        elements: Sequence[str],
        coordinates,
        energy: float,
        fp_params: FingerprintParams | None = None,
    ) -> "Structure":
        coords = np.array(coordinates, dtype=float).reshape(-1, 3)
        if len(coords) != len(elements):
            raise ValueError(
                f"{name}: {len(elements)} elements but {len(coords)} positions")
        valid = geometry_is_sane(coords)
        if valid:
            rot = rotational_constants(elements, coords)
            fp = persistence_image(coords, fp_params)
        else:
            rot = (0.0, 0.0, 0.0)
            fp = np.zeros((1, 1))
        coords.setflags(write=False)
        fp.setflags(write=False)
        return cls(
            index=index,
            name=name,
            elements=tuple(elements),
            coordinates=coords,
            energy=float(energy),
            rotational_constants=rot,
            fingerprint=fp,
            valid=valid,
        )

    def xyz_block(self) -> str:
        lines = [str(self.atom_count), f"  {self.energy:.10f}  {self.name}"]
        for elem, (x, y, z) in zip(self.elements, self.coordinates):
            lines.append(f"{elem:<3s}{x:14.8f}{y:14.8f}{z:14.8f}")
        return "\n".join(lines) + "\n"

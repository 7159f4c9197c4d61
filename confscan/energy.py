"""
energy.py — injected energy backends for structures read without an energy.

Only single-point energies are computed here; geometries are never relaxed.
Backends work on an RDKit Mol carrying one conformer and return Hartree.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict

from rdkit import Chem
from rdkit.Chem import AllChem, rdDetermineBonds

from confscan.io_utils import InputError
from confscan.structure import KCALMOL_TO_HARTREE

logger = logging.getLogger("confscan")

EnergyBackend = Callable[[Chem.Mol], float]


class EnergyBackendError(InputError):
    """The energy backend could not evaluate a structure."""


def _perceive_bonds(mol: Chem.Mol, charge: int) -> Chem.Mol:
    mol = Chem.Mol(mol)
    rdDetermineBonds.DetermineBonds(mol, charge=charge)
    return mol


def _mmff_energy(mol: Chem.Mol, variant: str) -> float | None:
    props = AllChem.MMFFGetMoleculeProperties(mol, mmffVariant=variant)
    if props is None:
        return None
    ff = AllChem.MMFFGetMoleculeForceField(mol, props, confId=0)
    if ff is None:
        return None
    return ff.CalcEnergy()


def _uff_energy(mol: Chem.Mol) -> float | None:
    ff = AllChem.UFFGetMoleculeForceField(mol, confId=0)
    if ff is None:
        return None
    return ff.CalcEnergy()


def _force_field_backend(variant: str, charge: int) -> EnergyBackend:
    """MMFF single point with UFF fallback (UFF only for ``variant == "UFF"``)."""

    def _evaluate(mol: Chem.Mol) -> float:
        try:
            bonded = _perceive_bonds(mol, charge)
        except Exception as exc:
            raise EnergyBackendError(f"Bond perception failed: {exc}") from exc

        energy = None
        if variant != "UFF":
            energy = _mmff_energy(bonded, variant)
            if energy is None:
                logger.debug("MMFF typing failed; falling back to UFF")
        if energy is None:
            energy = _uff_energy(bonded)
        if energy is None:
            raise EnergyBackendError(
                f"No force field available for structure ({variant}/UFF)")
        return energy * KCALMOL_TO_HARTREE

    return _evaluate


_BACKENDS: Dict[str, str] = {
    "mmff94s": "MMFF94s",
    "mmff94": "MMFF94",
    "uff": "UFF",
}

DEFAULT_METHOD = "mmff94s"


def get_energy_backend(method: str = "", charge: int = 0) -> EnergyBackend:
    """Resolve a method name to an energy callable (Mol -> Hartree)."""
    key = (method or DEFAULT_METHOD).lower()
    if key not in _BACKENDS:
        raise EnergyBackendError(
            f"Unknown energy method: {method!r}.  "
            f"Use {'|'.join(sorted(_BACKENDS))}.")
    return _force_field_backend(_BACKENDS[key], charge)

"""
io_utils.py — XYZ/TRJ ingestion and structure-stream writers.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

from rdkit import Chem

from confscan.fingerprint import FingerprintParams
from confscan.structure import Structure

logger = logging.getLogger("confscan")

XYZ_SUFFIXES = (".xyz", ".trj")

_ENERGY_RE = re.compile(
    r"energy\s*[:=]?\s*(-?\d+(?:\.\d*)?(?:[eE][-+]?\d+)?)", re.IGNORECASE)

# energies this close to zero are treated as "not present in the file"
_NO_ENERGY = 1e-5


class InputError(ValueError):
    """Fatal ingestion problem: unreadable input, unknown format, bad energy."""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_comment(comment: str) -> Tuple[float, str]:
    """Energy and label from an XYZ comment line.

    A leading numeric token is the energy and the remainder the label; this
    wins over any ``energy:`` text inside the label.  Otherwise xtb-style
    ``energy: -12.34 gnorm: ...`` is read.
    Energy is 0.0 when nothing numeric is found.
    """
    tokens = comment.split()
    if tokens:
        try:
            return float(tokens[0]), " ".join(tokens[1:])
        except ValueError:
            pass
    match = _ENERGY_RE.search(comment)
    if match:
        return float(match.group(1)), comment.strip()
    return 0.0, comment.strip()


def iter_xyz_frames(path: Path) -> Iterator[Tuple[str, str]]:
    """Yield ``(xyz_block, comment)`` for each frame of a multi-frame XYZ."""
    lines = Path(path).read_text().splitlines()
    idx = 0
    while idx < len(lines):
        header = lines[idx].strip()
        if not header:
            idx += 1
            continue
        try:
            natoms = int(header.split()[0])
        except ValueError:
            raise InputError(
                f"{path}: expected an atom count on line {idx + 1}, got {header!r}")
        end = idx + 2 + natoms
        if end > len(lines):
            raise InputError(f"{path}: truncated frame starting at line {idx + 1}")
        comment = lines[idx + 1]
        yield "\n".join(lines[idx:end]) + "\n", comment
        idx = end


def _mol_from_block(block: str, path: Path, frame: int) -> Chem.Mol:
    try:
        mol = Chem.MolFromXYZBlock(block)
    except RuntimeError as exc:
        raise InputError(f"RDKit could not parse frame {frame} of {path}: {exc}")
    if mol is None or mol.GetNumConformers() == 0:
        raise InputError(f"RDKit could not parse frame {frame} of {path}")
    return mol


def read_structures(
    path: str | Path,
    fp_params: FingerprintParams | None = None,
    energy_backend: Optional[Callable[[Chem.Mol], float]] = None,
    force_backend: bool = False,
    noname: bool = False,
    start_index: int = 0,
) -> List[Structure]:
    """Read every frame of an XYZ/TRJ file into :class:`Structure` records.

    Parameters
    ----------
    path : str | Path
        ``.xyz`` or ``.trj`` file, one or more concatenated frames.
    energy_backend : callable, optional
        ``Mol -> Hartree``; used when a frame carries no energy, or for every
        frame when *force_backend* is set.
    noname : bool
        Rename structures ``input_<n>`` instead of using the comment line.

    Raises
    ------
    InputError on a missing file, wrong extension, or unparseable frame.
    """
    p = Path(path)
    if p.suffix.lower() not in XYZ_SUFFIXES:
        raise InputError(
            f"Unsupported input {p.name!r}: expected one of {', '.join(XYZ_SUFFIXES)}")
    if not p.exists():
        raise InputError(f"Input file not found: {p}")

    structures: List[Structure] = []
    for frame, (block, comment) in enumerate(iter_xyz_frames(p)):
        mol = _mol_from_block(block, p, frame)
        energy, label = parse_comment(comment)
        if force_backend or abs(energy) < _NO_ENERGY:
            if energy_backend is None:
                raise InputError(
                    f"Frame {frame} of {p} has no energy and no energy backend "
                    f"was configured")
            energy = energy_backend(mol)

        index = start_index + frame
        if noname:
            name = f"input_{index + 1}"
        else:
            name = label or f"{p.stem}_{frame}"
        structures.append(Structure.from_geometry(
            index=index,
            name=name,
            elements=[a.GetSymbol() for a in mol.GetAtoms()],
            coordinates=mol.GetConformer().GetPositions(),
            energy=energy,
            fp_params=fp_params,
        ))

    if not structures:
        raise InputError(f"No structures found in {p}")
    logger.info("Read %d structures from %s", len(structures), p)
    return structures


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------

def write_xyz(structures: Iterable[Structure], path: Path) -> int:
    """Write structures as a multi-frame XYZ.  Returns the frame count."""
    n = 0
    with open(path, "w") as fh:
        for s in structures:
            fh.write(s.xyz_block())
            n += 1
    logger.info("Wrote %d structures → %s", n, path)
    return n


def append_xyz(structure: Structure, path: Path) -> None:
    with open(path, "a") as fh:
        fh.write(structure.xyz_block())

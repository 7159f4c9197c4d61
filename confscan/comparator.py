"""
comparator.py — structural comparator contract and the Kabsch/Hungarian adapter.

Every comparison is "reference vs target": the reference is a structure that
is already accepted, the target is the candidate being judged.  A reorder
rule ``rule`` maps reference position ``i`` onto target atom ``rule[i]`` over
the compared atoms (all atoms, or heavy atoms only).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

import numpy as np
from rdkit import Chem
from scipy.optimize import linear_sum_assignment
from scipy.spatial.distance import cdist

from confscan.structure import Structure

logger = logging.getLogger("confscan")

Rule = Tuple[int, ...]

_PT = Chem.GetPeriodicTable()

BOND_TOLERANCE = 1.2
HBOND_ACCEPTORS = frozenset({"N", "O", "F"})
HBOND_MIN_A = 1.5
HBOND_MAX_A = 2.6

# proper rotations that flip principal-axis signs
_AXIS_FLIPS = (
    np.diag([1.0, 1.0, 1.0]),
    np.diag([-1.0, -1.0, 1.0]),
    np.diag([-1.0, 1.0, -1.0]),
    np.diag([1.0, -1.0, -1.0]),
)


def is_duplicate(rmsd: float, topology_difference: Optional[int],
                 rmsd_threshold: float, max_topology_difference: int) -> bool:
    """Duplicate verdict shared by every comparison path."""
    if not np.isfinite(rmsd) or rmsd > rmsd_threshold:
        return False
    if max_topology_difference == -1:
        return True
    return topology_difference is not None and topology_difference <= max_topology_difference


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class StructureComparator(ABC):
    """Operations the deduplication passes need from a comparator."""

    @abstractmethod
    def rule_length(self, structure: Structure) -> int:
        """Length a reorder rule must have to apply to *structure*."""

    @abstractmethod
    def align(self, reference: Structure, target: Structure) -> float:
        """Best-fit RMSD in the given atom order."""

    @abstractmethod
    def align_with_reorder(self, reference: Structure, target: Structure,
                           threads: int = 1) -> Tuple[float, Optional[Rule]]:
        """Best RMSD over relabellings of *target*, and the winning rule.

        *threads* is the share of the thread budget this call may use.
        """

    @abstractmethod
    def rmsd_for_rule(self, reference: Structure, target: Structure,
                      rule: Sequence[int]) -> float:
        """RMSD after relabelling *target* with a known *rule* (no search)."""

    @abstractmethod
    def hbond_topology_difference(self, reference: Structure, target: Structure,
                                  rule: Optional[Sequence[int]] = None) -> int:
        """Number of hydrogen-bond contacts present in only one structure."""


# ---------------------------------------------------------------------------
# Geometry helpers
# ---------------------------------------------------------------------------

def kabsch_rmsd(reference: np.ndarray, target: np.ndarray) -> float:
    """RMSD after optimal rigid superposition of *target* onto *reference*.

    Returns ``inf`` for empty, mismatched or non-finite input.
    """
    p = np.asarray(reference, dtype=float)
    q = np.asarray(target, dtype=float)
    if p.shape != q.shape or len(p) == 0:
        return float("inf")
    if not (np.all(np.isfinite(p)) and np.all(np.isfinite(q))):
        return float("inf")
    p = p - p.mean(axis=0)
    q = q - q.mean(axis=0)
    try:
        u, _, vt = np.linalg.svd(q.T @ p)
    except np.linalg.LinAlgError:
        return float("inf")
    d = np.sign(np.linalg.det(vt.T @ u.T)) or 1.0
    rot = vt.T @ np.diag([1.0, 1.0, d]) @ u.T
    diff = p - q @ rot.T
    rmsd = float(np.sqrt(np.mean(np.sum(diff * diff, axis=1))))
    return rmsd if np.isfinite(rmsd) else float("inf")


def kabsch_rotation(p: np.ndarray, q: np.ndarray) -> np.ndarray:
    """Proper rotation taking centred *q* onto centred *p* (apply as ``q @ rot.T``)."""
    u, _, vt = np.linalg.svd(q.T @ p)
    d = np.sign(np.linalg.det(vt.T @ u.T)) or 1.0
    return vt.T @ np.diag([1.0, 1.0, d]) @ u.T


def kabsch_fit(reference: np.ndarray, target: np.ndarray) -> np.ndarray:
    """*target* (centred) rotated onto the centred *reference*."""
    p = reference - reference.mean(axis=0)
    q = target - target.mean(axis=0)
    return q @ kabsch_rotation(p, q).T


def principal_frame(coords: np.ndarray, masses: np.ndarray) -> np.ndarray:
    """Coordinates centred on the centre of mass and rotated onto principal axes."""
    com = (coords * masses[:, None]).sum(axis=0) / masses.sum()
    r = coords - com
    inertia = np.einsum("k,ki,kj->ij", masses, r, r)
    _, vecs = np.linalg.eigh(inertia)
    if np.linalg.det(vecs) < 0:
        vecs[:, 0] = -vecs[:, 0]
    return r @ vecs


def covalent_bonds(elements: Sequence[str], coords: np.ndarray) -> Set[FrozenSet[int]]:
    radii = np.array([_PT.GetRcovalent(_PT.GetAtomicNumber(e)) for e in elements])
    dist = cdist(coords, coords)
    limit = (radii[:, None] + radii[None, :]) * BOND_TOLERANCE
    ii, jj = np.nonzero(np.triu(dist < limit, k=1))
    return {frozenset((int(i), int(j))) for i, j in zip(ii, jj)}


def hydrogen_bonds(elements: Sequence[str], coords: np.ndarray) -> Set[Tuple[int, int]]:
    """(hydrogen, acceptor) contacts between non-bonded H and N/O/F atoms."""
    bonds = covalent_bonds(elements, coords)
    hydrogens = [i for i, e in enumerate(elements) if e == "H"]
    acceptors = [i for i, e in enumerate(elements) if e in HBOND_ACCEPTORS]
    if not hydrogens or not acceptors:
        return set()
    dist = cdist(coords[hydrogens], coords[acceptors])
    contacts = set()
    for hi, h in enumerate(hydrogens):
        for ai, a in enumerate(acceptors):
            if HBOND_MIN_A <= dist[hi, ai] <= HBOND_MAX_A and frozenset((h, a)) not in bonds:
                contacts.add((h, a))
    return contacts


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class KabschComparator(StructureComparator):
    """Kabsch superposition with a Hungarian relabelling search.

    The search aligns both structures on their principal axes, tries the four
    proper axis orientations (plus the input labelling), assigns atoms within
    each element with :func:`scipy.optimize.linear_sum_assignment`, refits and
    reassigns once, and keeps the lowest RMSD.
    """

    def __init__(self, heavy_only: bool = False, check_connectivity: bool = False):
        self.heavy_only = heavy_only
        self.check_connectivity = check_connectivity
        # bonds of the most recent reference only; a worker keeps one reference
        self._reference_bonds: Optional[Tuple[Structure, Set[FrozenSet[int]]]] = None

    # ── selection ──────────────────────────────────────────────────────

    def _selection(self, structure: Structure) -> Tuple[int, ...]:
        if self.heavy_only:
            return structure.heavy_atom_indices
        return tuple(range(structure.atom_count))

    def rule_length(self, structure: Structure) -> int:
        return len(self._selection(structure))

    def _compared(self, structure: Structure) -> Tuple[np.ndarray, List[str]]:
        sel = list(self._selection(structure))
        return structure.coordinates[sel], [structure.elements[i] for i in sel]

    # ── contract ───────────────────────────────────────────────────────

    def align(self, reference: Structure, target: Structure) -> float:
        p, p_el = self._compared(reference)
        q, q_el = self._compared(target)
        if p_el != q_el:
            return float("inf")
        return kabsch_rmsd(p, q)

    def rmsd_for_rule(self, reference: Structure, target: Structure,
                      rule: Sequence[int]) -> float:
        p, p_el = self._compared(reference)
        q, q_el = self._compared(target)
        rule = list(rule)
        if sorted(rule) != list(range(len(q))):
            return float("inf")
        if [q_el[j] for j in rule] != p_el:
            return float("inf")
        return kabsch_rmsd(p, q[rule])

    def align_with_reorder(self, reference: Structure, target: Structure,
                           threads: int = 1) -> Tuple[float, Optional[Rule]]:
        p, p_el = self._compared(reference)
        q, q_el = self._compared(target)
        if len(p) != len(q) or sorted(p_el) != sorted(q_el) or len(p) == 0:
            return float("inf"), None
        if not (np.all(np.isfinite(p)) and np.all(np.isfinite(q))):
            return float("inf"), None

        groups: Dict[str, List[int]] = defaultdict(list)
        for i, e in enumerate(p_el):
            groups[e].append(i)
        target_groups: Dict[str, List[int]] = defaultdict(list)
        for j, e in enumerate(q_el):
            target_groups[e].append(j)

        candidates: List[Rule] = []
        if p_el == q_el:
            candidates.append(tuple(range(len(p))))

        masses = np.array([_PT.GetAtomicWeight(e) for e in p_el])
        p_frame = principal_frame(p, masses)
        q_frame = principal_frame(q, np.array([_PT.GetAtomicWeight(e) for e in q_el]))
        for flip in _AXIS_FLIPS:
            rule = self._assign(p_frame, q_frame @ flip, groups, target_groups)
            refit = kabsch_fit(p, q[list(rule)])
            # reassign in the refitted frame
            moved = np.empty_like(q)
            moved[list(rule)] = refit
            candidates.append(rule)
            candidates.append(self._assign(p - p.mean(axis=0), moved, groups, target_groups))

        if self.check_connectivity:
            ref_bonds = self._bonds_of_reference(reference)
            tgt_bonds = covalent_bonds(target.elements, target.coordinates)

        best_rmsd, best_rule = float("inf"), None
        for rule in dict.fromkeys(candidates):
            if self.check_connectivity and not self._keeps_bonds(
                    reference, target, rule, ref_bonds, tgt_bonds):
                continue
            rmsd = kabsch_rmsd(p, q[list(rule)])
            if rmsd < best_rmsd:
                best_rmsd, best_rule = rmsd, rule
        return best_rmsd, best_rule

    def hbond_topology_difference(self, reference: Structure, target: Structure,
                                  rule: Optional[Sequence[int]] = None) -> int:
        ref_hb = hydrogen_bonds(reference.elements, reference.coordinates)
        tgt_hb = hydrogen_bonds(target.elements, target.coordinates)
        if rule is not None:
            inverse = self._full_inverse(reference, target, rule)
            tgt_hb = {(inverse.get(h, h), inverse.get(a, a)) for h, a in tgt_hb}
        return len(ref_hb ^ tgt_hb)

    # ── internals ──────────────────────────────────────────────────────

    @staticmethod
    def _assign(p: np.ndarray, q: np.ndarray, groups, target_groups) -> Rule:
        rule = [0] * len(p)
        for element, ref_idx in groups.items():
            tgt_idx = target_groups[element]
            if len(ref_idx) == 1:
                rule[ref_idx[0]] = tgt_idx[0]
                continue
            cost = cdist(p[ref_idx], q[tgt_idx], metric="sqeuclidean")
            rows, cols = linear_sum_assignment(cost)
            for r, c in zip(rows, cols):
                rule[ref_idx[r]] = tgt_idx[c]
        return tuple(rule)

    def _full_inverse(self, reference: Structure, target: Structure,
                      rule: Sequence[int]) -> Dict[int, int]:
        """Target atom index -> reference atom index.

        Covers the compared atoms through *rule*.  With ``heavy_only`` the
        hydrogens are matched as well, after superposing the target on the
        reference through the heavy-atom rule.
        """
        ref_sel, tgt_sel = self._selection(reference), self._selection(target)
        inverse = {tgt_sel[j]: ref_sel[i] for i, j in enumerate(rule)}
        if self.heavy_only and len(rule) == len(ref_sel):
            inverse.update(self._hydrogen_inverse(reference, target, rule))
        return inverse

    def _hydrogen_inverse(self, reference: Structure, target: Structure,
                          rule: Sequence[int]) -> Dict[int, int]:
        ref_h = [i for i, e in enumerate(reference.elements) if e == "H"]
        tgt_h = [j for j, e in enumerate(target.elements) if e == "H"]
        if not ref_h or not rule or len(ref_h) != len(tgt_h):
            return {}
        ref_sel, tgt_sel = self._selection(reference), self._selection(target)
        p = reference.coordinates[list(ref_sel)]
        q = target.coordinates[[tgt_sel[j] for j in rule]]
        p_c, q_c = p.mean(axis=0), q.mean(axis=0)
        # fewer than three heavy atoms leave the rotation undetermined
        rot = kabsch_rotation(p - p_c, q - q_c) if len(p) >= 3 else np.eye(3)
        moved = (target.coordinates[tgt_h] - q_c) @ rot.T + p_c
        cost = cdist(reference.coordinates[ref_h], moved, metric="sqeuclidean")
        rows, cols = linear_sum_assignment(cost)
        return {tgt_h[c]: ref_h[r] for r, c in zip(rows, cols)}

    def _bonds_of_reference(self, reference: Structure) -> Set[FrozenSet[int]]:
        if self._reference_bonds is None or self._reference_bonds[0] is not reference:
            bonds = covalent_bonds(reference.elements, reference.coordinates)
            self._reference_bonds = (reference, bonds)
        return self._reference_bonds[1]

    @property
    def cached_reference(self) -> Optional[Structure]:
        return self._reference_bonds[0] if self._reference_bonds else None

    def _keeps_bonds(self, reference: Structure, target: Structure, rule: Rule,
                     reference_bonds: Set[FrozenSet[int]],
                     target_bonds: Set[FrozenSet[int]]) -> bool:
        ref_sel, tgt_sel = self._selection(reference), self._selection(target)
        forward = {ref_sel[i]: tgt_sel[j] for i, j in enumerate(rule)}
        for bond in reference_bonds:
            i, j = tuple(bond)
            if i not in forward or j not in forward:
                continue
            if frozenset((forward[i], forward[j])) not in target_bonds:
                return False
        return True

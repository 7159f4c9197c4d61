"""
restart.py — persist and reload the learned reorder rules between runs.

Restart file layout::

    {"ConfScan": {"ReorderRules": [[int, ...], ...],
                  "ReferenceLastEnergy": float,
                  "TargetLastEnergy": float,
                  "deltaE": float}}
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

logger = logging.getLogger("confscan")

SECTION = "ConfScan"
RESTART_SUFFIX = ".restart.json"


@dataclass
class RestartState:
    """Merged content of all restart sources."""
    rules: List[List[int]] = field(default_factory=list)
    reference_last_energy: Optional[float] = None
    target_last_energy: Optional[float] = None
    delta_e: float = -1.0
    sources: List[Path] = field(default_factory=list)
    failed: int = 0

    @property
    def loaded(self) -> int:
        return len(self.sources) - self.failed

    @property
    def use_restart(self) -> bool:
        """Exactly one source, and it loaded."""
        return len(self.sources) == 1 and self.failed == 0

    @property
    def forces_prevent_reorder(self) -> bool:
        return len(self.sources) > 1


def restart_path(outdir: Path, basename: str) -> Path:
    return Path(outdir) / f"{basename}{RESTART_SUFFIX}"


def discover_restart_files(outdir: Path, extra: Sequence[str | Path] = ()) -> List[Path]:
    """Explicit sources first, then ``*.restart.json`` in *outdir*; no duplicates."""
    found: List[Path] = []
    for p in list(extra) + sorted(Path(outdir).glob(f"*{RESTART_SUFFIX}")):
        p = Path(p)
        if p.resolve() not in {q.resolve() for q in found}:
            found.append(p)
    return found


def _parse_rules(raw) -> List[List[int]]:
    if not isinstance(raw, list):
        raise ValueError("ReorderRules must be a list of integer lists")
    rules = []
    for rule in raw:
        if not isinstance(rule, list):
            raise ValueError("ReorderRules must be a list of integer lists")
        rule = [int(i) for i in rule]
        if sorted(rule) != list(range(len(rule))):
            raise ValueError(f"reorder rule {rule} is not a permutation")
        rules.append(rule)
    return rules


def load_restart(paths: Iterable[str | Path]) -> RestartState:
    """Merge every restart source; unreadable sources are counted as failed."""
    state = RestartState()
    seen = set()
    for path in paths:
        path = Path(path)
        state.sources.append(path)
        logger.info("Reading restart file %s", path)
        try:
            block = json.loads(path.read_text())[SECTION]
            rules = _parse_rules(block.get("ReorderRules", []))
            energies = {key: float(block[key]) for key in
                        ("ReferenceLastEnergy", "TargetLastEnergy", "deltaE")
                        if key in block}
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring restart file %s: %s", path, exc)
            state.failed += 1
            continue

        if "ReferenceLastEnergy" in energies:
            state.reference_last_energy = energies["ReferenceLastEnergy"]
        if "TargetLastEnergy" in energies:
            state.target_last_energy = energies["TargetLastEnergy"]
        if "deltaE" in energies:
            state.delta_e = energies["deltaE"]
        for rule in rules:
            key = tuple(rule)
            if key not in seen:
                seen.add(key)
                state.rules.append(rule)

    if state.sources and state.loaded == 0:
        logger.warning("All %d restart sources failed; starting fresh", len(state.sources))
    logger.info("Starting with %d initial reorder rules.", len(state.rules))
    return state


def save_restart(path: Path, rules: Sequence[Sequence[int]],
                 reference_last_energy: float, target_last_energy: float,
                 delta_e: float) -> Path:
    block = {
        "ReorderRules": [list(r) for r in rules],
        "ReferenceLastEnergy": reference_last_energy,
        "TargetLastEnergy": target_last_energy,
        "deltaE": delta_e,
    }
    path = Path(path)
    path.write_text(json.dumps({SECTION: block}, indent=2))
    logger.info("Restart information: %s (%d rules)", path, len(rules))
    return path

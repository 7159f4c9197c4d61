"""
ScanConfig — all tuneable parameters for the conformer-scan stage.

Values can be set programmatically, via CLI flags, or loaded from a unified
pipeline config file (INI format, ``[conformer_scan]`` section).
"""

from __future__ import annotations

import json
from configparser import ConfigParser
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Optional


_SECTION = "conformer_scan"

DEFAULT_RMSD_ALL_ATOMS = 0.9
DEFAULT_RMSD_HEAVY_ATOMS = 0.75


def _strip_inline_comment(value: str) -> str:
    """Strip ``  # ...`` or ``\\t# ...`` inline comments (pipeline convention)."""
    if value is None:
        return value
    idx = value.find("  #")
    if idx == -1:
        idx = value.find("\t#")
    if idx != -1:
        value = value[:idx]
    return value.strip()


def _cfg_get(config: ConfigParser, key: str, fallback=None) -> Optional[str]:
    if _SECTION in config and key in config[_SECTION]:
        return _strip_inline_comment(config[_SECTION][key])
    if key in config["DEFAULT"]:
        return _strip_inline_comment(config["DEFAULT"][key])
    return fallback


@dataclass
class ScanConfig:
    """All parameters for the conformer-scan stage."""

    # ── duplicate criterion ─────────────────────────────────────────────
    rmsd_threshold: float = -1.0           # Å; -1 → 0.9 (0.75 heavy atoms)
    heavy_only: bool = False
    max_htopo_diff: int = -1               # -1 disables the H-bond gate
    check_connectivity: bool = False       # relabellings must keep bonds

    # ── cutoffs ─────────────────────────────────────────────────────────
    max_rank: int = -1
    energy_cutoff: float = -1.0            # kJ/mol above lowest accepted
    skip: int = 0

    # ── pre-filter calibration ──────────────────────────────────────────
    scale_loose: float = 1.5
    scale_tight: float = 0.1

    # ── passes ──────────────────────────────────────────────────────────
    skip_first: bool = False
    prevent_reorder: bool = False
    do_third: bool = False

    # ── restart ─────────────────────────────────────────────────────────
    restart: bool = True
    restart_files: List[str] = field(default_factory=list)
    last_de: float = -1.0

    # ── ingestion ───────────────────────────────────────────────────────
    accepted_file: str = ""
    method: str = ""                       # energy backend, "" = from file
    charge: int = 0
    noname: bool = False

    # ── fingerprint (persistence image) ─────────────────────────────────
    fp_xmin: float = 0.0
    fp_xmax: float = 4.0
    fp_ymin: float = 0.0
    fp_ymax: float = 4.0
    fp_bins: int = 10
    fp_std: float = 10.0
    fp_scaling: float = 0.1

    # ── performance ─────────────────────────────────────────────────────
    threads: int = 1

    # ── I/O ─────────────────────────────────────────────────────────────
    fewer_files: bool = False

    # ── version info (filled at run-time) ───────────────────────────────
    _versions: dict = field(default_factory=dict, repr=False)

    # ── helpers ─────────────────────────────────────────────────────────

    @property
    def effective_rmsd_threshold(self) -> float:
        if self.rmsd_threshold >= 0:
            return self.rmsd_threshold
        return DEFAULT_RMSD_HEAVY_ATOMS if self.heavy_only else DEFAULT_RMSD_ALL_ATOMS

    def to_dict(self) -> dict:
        d = asdict(self)
        d["_versions"] = self._versions
        d["effective_rmsd_threshold"] = self.effective_rmsd_threshold
        return d

    def to_json(self, path: Path) -> None:
        path.write_text(json.dumps(self.to_dict(), indent=2))

    @classmethod
    def from_config_file(cls, path: str | Path) -> "ScanConfig":
        """Load from a unified pipeline INI config that has a
        ``[conformer_scan]`` section."""
        cp = ConfigParser()
        with open(path, "r", encoding="utf-8-sig") as fh:
            cp.read_file(fh)
        if _SECTION not in cp:
            return cls()

        def _int(key, fb):
            v = _cfg_get(cp, key, None)
            return int(v) if v is not None else fb

        def _float(key, fb):
            v = _cfg_get(cp, key, None)
            return float(v) if v is not None else fb

        def _bool(key, fb):
            v = _cfg_get(cp, key, None)
            if v is None:
                return fb
            return v.lower() in {"1", "true", "yes", "on"}

        def _str(key, fb):
            v = _cfg_get(cp, key, None)
            return v if v is not None else fb

        def _list(key):
            v = _cfg_get(cp, key, None)
            if not v:
                return []
            return [item.strip() for item in v.split(",") if item.strip()]

        return cls(
            rmsd_threshold=_float("RMSDThreshold", cls.rmsd_threshold),
            heavy_only=_bool("Heavy", cls.heavy_only),
            max_htopo_diff=_int("MaxHTopoDiff", cls.max_htopo_diff),
            check_connectivity=_bool("CheckConnectivity", cls.check_connectivity),
            max_rank=_int("MaxRank", cls.max_rank),
            energy_cutoff=_float("MaxEnergy", cls.energy_cutoff),
            skip=_int("Skip", cls.skip),
            scale_loose=_float("ScaleLoose", cls.scale_loose),
            scale_tight=_float("ScaleTight", cls.scale_tight),
            skip_first=_bool("SkipFirst", cls.skip_first),
            prevent_reorder=_bool("PreventReorder", cls.prevent_reorder),
            do_third=_bool("DoThird", cls.do_third),
            restart=_bool("Restart", cls.restart),
            restart_files=_list("RestartFiles"),
            last_de=_float("LastDE", cls.last_de),
            accepted_file=_str("Accepted", cls.accepted_file),
            method=_str("Method", cls.method),
            charge=_int("Charge", cls.charge),
            noname=_bool("NoName", cls.noname),
            fp_xmin=_float("FingerprintXMin", cls.fp_xmin),
            fp_xmax=_float("FingerprintXMax", cls.fp_xmax),
            fp_ymin=_float("FingerprintYMin", cls.fp_ymin),
            fp_ymax=_float("FingerprintYMax", cls.fp_ymax),
            fp_bins=_int("FingerprintBins", cls.fp_bins),
            fp_std=_float("FingerprintStd", cls.fp_std),
            fp_scaling=_float("FingerprintScaling", cls.fp_scaling),
            threads=_int("Threads", cls.threads),
            fewer_files=_bool("FewerFiles", cls.fewer_files),
        )

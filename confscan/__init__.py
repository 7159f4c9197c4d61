"""
confscan — energy-ordered conformer deduplication.

Workflow:
    read XYZ ensemble → energy-sorted queue → pass 1 (plain RMSD, calibrates
    coarse pre-filter) → pass 2 (pre-filter + cached rules + relabelling
    search on a thread pool) → optional pass 3 (cached rules only) →
    rank / energy-window trim → accepted / rejected / thresh streams.

Public API:
    scan_conformers(input_path, outdir, cfg) -> ScanResult
"""

from confscan.config import ScanConfig
from confscan.core import ConformerScan, ScanResult, scan_conformers

__all__ = ["ScanConfig", "ConformerScan", "ScanResult", "scan_conformers"]

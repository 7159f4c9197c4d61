#!/usr/bin/env python3
"""
CLI entrypoint for the conformer-scan stage.

Usage examples:

    # Deduplicate a CREST/xtb ensemble, outputs next to the input
    python -m confscan crest_conformers.xyz

    # Heavy-atom RMSD, 5 kJ/mol window, keep at most 20 structures
    python -m confscan ensemble.xyz --outdir /scratch/scan --heavy \\
           --energy-cutoff 5 --max-rank 20

    # Add new structures to a previously accepted set
    python -m confscan new_batch.xyz --accepted old.accepted.xyz

    # Using a pipeline config file for defaults
    python -m confscan --config config.txt ensemble.xyz --threads 8

Create a file named ``stop`` in the output directory to end a running scan
early; partial results and the restart file are still written.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="python -m confscan",
        description="Remove duplicate conformers from an energy-ordered ensemble.",
    )

    # ── required I/O ────────────────────────────────────────────────────
    p.add_argument("input", type=Path,
                   help="Multi-frame XYZ/TRJ ensemble.")
    p.add_argument("--outdir", default=None, type=Path,
                   help="Output directory (default: next to the input).")

    # ── optional config file ────────────────────────────────────────────
    p.add_argument("--config", default=None, type=Path,
                   help="Pipeline INI config with [conformer_scan] section. "
                        "CLI flags override config values.")

    # ── duplicate criterion ─────────────────────────────────────────────
    p.add_argument("--rmsd", type=float, default=None,
                   help="RMSD threshold, Å (default 0.9, 0.75 with --heavy).")
    p.add_argument("--heavy", action="store_true", default=None,
                   help="Compare heavy atoms only.")
    p.add_argument("--max-htopo-diff", type=int, default=None,
                   help="Max H-bond topology difference (default -1, off).")
    p.add_argument("--check-connectivity", action="store_true", default=None,
                   help="Relabellings must preserve covalent bonds.")

    # ── cutoffs ─────────────────────────────────────────────────────────
    p.add_argument("--max-rank", type=int, default=None,
                   help="Keep at most N structures (default -1, all).")
    p.add_argument("--energy-cutoff", type=float, default=None,
                   help="Energy window above the lowest, kJ/mol (default -1, off).")
    p.add_argument("--skip", type=int, default=None,
                   help="Drop the N lowest-energy structures.")

    # ── pre-filter ──────────────────────────────────────────────────────
    p.add_argument("--scale-loose", type=float, default=None,
                   help="Loose calibration multiple of the RMSD threshold (default 1.5).")
    p.add_argument("--scale-tight", type=float, default=None,
                   help="Tight calibration multiple of the RMSD threshold (default 0.1).")

    # ── passes ──────────────────────────────────────────────────────────
    p.add_argument("--skip-first", action="store_true", default=None,
                   help="Skip the plain-RMSD first pass.")
    p.add_argument("--prevent-reorder", action="store_true", default=None,
                   help="Skip the relabelling pass.")
    p.add_argument("--do-third", action="store_true", default=None,
                   help="Run the cached-rules-only third pass.")

    # ── restart ─────────────────────────────────────────────────────────
    p.add_argument("--no-restart", action="store_true",
                   help="Neither read nor write restart files.")
    p.add_argument("--restart-file", action="append", default=None,
                   help="Extra restart file to merge (repeatable).")
    p.add_argument("--last-de", type=float, default=None,
                   help="Override the restart energy gap, kJ/mol.")

    # ── ingestion ───────────────────────────────────────────────────────
    p.add_argument("--accepted", default=None,
                   help="Previously accepted XYZ; its structures seed the scan.")
    p.add_argument("--method", default=None,
                   choices=["mmff94s", "mmff94", "uff"],
                   help="Recompute energies with this force field.")
    p.add_argument("--charge", type=int, default=None,
                   help="Total charge for bond perception (default 0).")
    p.add_argument("--noname", action="store_true", default=None,
                   help="Rename structures input_<n>.")

    # ── performance / output ────────────────────────────────────────────
    p.add_argument("--threads", type=int, default=None,
                   help="Worker threads for the relabelling pass (default 1).")
    p.add_argument("--fewer-files", action="store_true", default=None,
                   help="Only write accepted, joined, restart and metadata.")

    return p


def main(argv=None):
    parser = _build_parser()
    args = parser.parse_args(argv)

    # Late import so --help is fast even without rdkit
    from confscan.config import ScanConfig
    from confscan.core import scan_conformers

    # Build config: start from config file if given, then overlay CLI flags
    if args.config is not None:
        cfg = ScanConfig.from_config_file(args.config)
    else:
        cfg = ScanConfig()

    # CLI overrides
    overrides = {
        "rmsd_threshold": args.rmsd,
        "heavy_only": args.heavy,
        "max_htopo_diff": args.max_htopo_diff,
        "check_connectivity": args.check_connectivity,
        "max_rank": args.max_rank,
        "energy_cutoff": args.energy_cutoff,
        "skip": args.skip,
        "scale_loose": args.scale_loose,
        "scale_tight": args.scale_tight,
        "skip_first": args.skip_first,
        "prevent_reorder": args.prevent_reorder,
        "do_third": args.do_third,
        "restart_files": args.restart_file,
        "last_de": args.last_de,
        "accepted_file": args.accepted,
        "method": args.method,
        "charge": args.charge,
        "noname": args.noname,
        "threads": args.threads,
        "fewer_files": args.fewer_files,
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(cfg, name, value)
    if args.no_restart:
        cfg.restart = False

    result = scan_conformers(args.input, args.outdir, cfg)

    if result.success:
        outdir = result.outdir
        state = "cancelled" if result.cancelled else "done"
        print(f"\n[OK] {len(result.accepted)} accepted, {len(result.rejected)} rejected, "
              f"{len(result.threshold_rejected)} below thresholds ({state})")
        print(f"     Accepted:    {result.outputs['accepted']}")
        if "joined" in result.outputs:
            print(f"     Joined:      {result.outputs['joined']}")
        if "restart" in result.outputs:
            print(f"     Restart:     {result.outputs['restart']}")
        print(f"     Metadata:    {outdir}/metadata.json")
    else:
        print(f"\n[FAIL] Conformer scan failed.", file=sys.stderr)
        for err in result.errors:
            print(f"  ERROR: {err}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

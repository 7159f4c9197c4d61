"""
core.py — conformer deduplication scan.

Pipeline:
    1. Read the input ensemble (and an optional previously accepted seed set)
    2. Load reorder rules from restart files
    3. Pass 1: plain Kabsch RMSD against every accepted structure,
       calibrating the coarse pre-filter thresholds
    4. Pass 2: pre-filter, cached reorder rules, then a fresh relabelling
       search on a thread pool (one worker per accepted reference)
    5. Pass 3 (optional): cached rules only
    6. Trim by rank / energy window, write restart + output streams
"""

from __future__ import annotations

import json
import logging
import platform
import time
from dataclasses import asdict, dataclass, field
from functools import partial
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from rdkit import __version__ as _rdkit_version

from confscan.comparator import KabschComparator, Rule, is_duplicate
from confscan.config import ScanConfig
from confscan.energy import get_energy_backend
from confscan.fingerprint import FingerprintParams
from confscan.io_utils import InputError, append_xyz, read_structures, write_xyz
from confscan.prefilter import ThresholdState, Verdict, coarse_deltas
from confscan.queue import CandidateQueue
from confscan.restart import (RestartState, discover_restart_files, load_restart,
                              restart_path, save_restart)
from confscan.rules import ReorderRuleCache
from confscan.structure import HARTREE_TO_KJMOL, Structure
from confscan.workers import ComparatorFactory, WorkerPool

logger = logging.getLogger("confscan")

STOP_FILE = "stop"
LOG_FILE = "conformer_scan.log"


# ---------------------------------------------------------------------------
# Result containers
# ---------------------------------------------------------------------------

@dataclass
class RunStatistics:
    """Per-pass counters; reporting only."""
    accepted: int = 0
    rejected: int = 0
    threshold_rejected: int = 0
    reorder_searches: int = 0
    reorder_succeeded: int = 0
    rule_hits: int = 0


@dataclass
class Rejection:
    """Why one structure was dropped, with the numbers that justified it."""
    structure: Structure
    cause: str                      # invalid | energy | rank | threshold | rmsd | rule
    reference: Optional[Structure] = None
    rmsd: Optional[float] = None
    diff_rot: Optional[float] = None
    diff_fp: Optional[float] = None
    rule: Optional[Rule] = None
    energy_gap: Optional[float] = None


@dataclass
class PassResult:
    name: str
    accepted: List[Structure] = field(default_factory=list)
    rejected: List[Structure] = field(default_factory=list)
    threshold_rejected: List[Structure] = field(default_factory=list)
    unprocessed: List[Structure] = field(default_factory=list)
    rejections: List[Rejection] = field(default_factory=list)
    statistics: RunStatistics = field(default_factory=RunStatistics)
    cancelled: bool = False
    elapsed_s: float = 0.0


@dataclass
class ScanOutcome:
    """In-memory partitions produced by :meth:`ConformerScan.run`."""
    accepted: List[Structure]
    rejected: List[Structure]
    threshold_rejected: List[Structure]
    joined: List[Structure]
    unprocessed: List[Structure]
    passes: List[PassResult]
    cancelled: bool


@dataclass
class ScanResult:
    """Returned by :func:`scan_conformers`."""
    success: bool
    input_path: str
    num_input: int = 0
    num_seed: int = 0
    accepted: List[Structure] = field(default_factory=list)
    rejected: List[Structure] = field(default_factory=list)
    threshold_rejected: List[Structure] = field(default_factory=list)
    joined: List[Structure] = field(default_factory=list)
    unprocessed: List[Structure] = field(default_factory=list)
    pass_statistics: Dict[str, RunStatistics] = field(default_factory=dict)
    thresholds: Dict[str, float] = field(default_factory=dict)
    num_rules: int = 0
    cancelled: bool = False
    outdir: Optional[Path] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Statistic log
# ---------------------------------------------------------------------------

class StatisticLog:
    """Human-readable record of every rejection.  A *path* of None is a no-op."""

    def __init__(self, path: Optional[Path]):
        self.path = path
        if path is not None:
            Path(path).write_text("")

    def _write(self, text: str) -> None:
        if self.path is None:
            return
        with open(self.path, "a") as fh:
            fh.write(text)

    def section(self, title: str) -> None:
        self._write(f"\n{'=' * 60}\n{title}\n{'=' * 60}\n")

    def record(self, rej: Rejection, rmsd_threshold: float, max_rank: int,
               energy_cutoff: float) -> None:
        s = rej.structure
        gap = "" if rej.energy_gap is None else (
            f" with an energy difference of {rej.energy_gap:.4f} kJ/mol")
        if rej.cause == "rmsd":
            line = (f"{s.name} rejected: RMSD {rej.rmsd:.4f} <= {rmsd_threshold:.4f}"
                    f" against {rej.reference.name}{gap}")
        elif rej.cause == "rule":
            line = (f"{s.name} rejected: cached reorder rule gives RMSD "
                    f"{rej.rmsd:.4f} against {rej.reference.name}{gap}\n"
                    f"  rule: {list(rej.rule)}")
        elif rej.cause == "threshold":
            line = (f"{s.name} rejected: differences {rej.diff_rot:.4f} MHz and "
                    f"{rej.diff_fp:.6f} below the estimated thresholds against "
                    f"{rej.reference.name}{gap}")
        elif rej.cause == "energy":
            line = f"{s.name} rejected: outside the {energy_cutoff:g} kJ/mol window{gap}"
        elif rej.cause == "rank":
            line = f"{s.name} rejected: beyond rank cap {max_rank}"
        else:
            line = f"{s.name} rejected: geometry failed the sanity check"
        text = line + "\n"
        if rej.reference is not None:
            text += s.xyz_block() + rej.reference.xyz_block()
        self._write(text + "\n")


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class ConformerScan:
    """Three-pass deduplication over an energy-ordered candidate queue.

    The orchestrator thread owns the rule cache, the threshold state and the
    restart bookkeeping; workers only ever see frozen snapshots.
    """

    def __init__(
        self,
        cfg: ScanConfig,
        comparator_factory: Optional[ComparatorFactory] = None,
        rule_cache: Optional[ReorderRuleCache] = None,
        restart_state: Optional[RestartState] = None,
        stop_requested: Optional[Callable[[], bool]] = None,
        statistic_log: Optional[StatisticLog] = None,
        pass_files: Optional[Dict[str, Path]] = None,
    ):
        self.cfg = cfg
        self.comparator_factory = comparator_factory or partial(
            KabschComparator, heavy_only=cfg.heavy_only,
            check_connectivity=cfg.check_connectivity)
        self.rule_cache = rule_cache if rule_cache is not None else ReorderRuleCache()
        self.restart_state = restart_state or RestartState()
        self.stop_requested = stop_requested or (lambda: False)
        self.statistic_log = statistic_log or StatisticLog(None)
        self.pass_files = pass_files or {}

        self.rmsd_threshold = cfg.effective_rmsd_threshold
        self.thresholds = ThresholdState()
        self.seed: List[Structure] = []
        self.lowest_energy: Optional[float] = None

        self.prevent_reorder = cfg.prevent_reorder
        if self.restart_state.forces_prevent_reorder and not self.prevent_reorder:
            logger.warning("%d restart sources merged; disabling the reorder pass",
                           len(self.restart_state.sources))
            self.prevent_reorder = True

        self.use_restart = self.restart_state.use_restart
        self.last_de = cfg.last_de if cfg.last_de >= 0 else self.restart_state.delta_e
        self.reference_last_energy = self.restart_state.reference_last_energy or 0.0
        self.target_last_energy = self.restart_state.target_last_energy or 0.0
        self.delta_e = -1.0

    # ── small predicates ───────────────────────────────────────────────

    def energy_gap(self, structure: Structure) -> float:
        if self.lowest_energy is None:
            return 0.0
        return (structure.energy - self.lowest_energy) * HARTREE_TO_KJMOL

    def _outside_window(self, gap: float) -> bool:
        return self.cfg.energy_cutoff >= 0 and gap > self.cfg.energy_cutoff

    def _rank_reached(self, count: int) -> bool:
        return self.cfg.max_rank > -1 and count >= self.cfg.max_rank

    def _search_allowed(self, gap: float) -> bool:
        """Fresh searches stay off while below the last restart dE."""
        if self.use_restart and gap < self.last_de:
            return False
        if self.use_restart:
            logger.info("Reached restart dE %.4f kJ/mol; searching again", self.last_de)
            self.use_restart = False
        return True

    def _remember_pair(self, reference: Structure, candidate: Structure) -> None:
        self.reference_last_energy = reference.energy
        self.target_last_energy = candidate.energy

    # ── bookkeeping ────────────────────────────────────────────────────

    def _accept(self, result: PassResult, structure: Structure, key: str) -> None:
        result.accepted.append(structure)
        result.statistics.accepted += 1
        if self.lowest_energy is None:
            self.lowest_energy = structure.energy
        path = self.pass_files.get(key)
        if path is not None:
            append_xyz(structure, path)

    def _reject(self, result: PassResult, rej: Rejection) -> None:
        if rej.cause == "threshold":
            result.threshold_rejected.append(rej.structure)
            result.statistics.threshold_rejected += 1
        else:
            result.rejected.append(rej.structure)
            result.statistics.rejected += 1
        result.rejections.append(rej)
        logger.debug("%s rejected (%s)", rej.structure.name, rej.cause)
        self.statistic_log.record(rej, self.rmsd_threshold, self.cfg.max_rank,
                                  self.cfg.energy_cutoff)

    def _reject_rest(self, result: PassResult, rest: Sequence[Structure],
                     cause: str) -> None:
        if not rest:
            return
        if cause == "energy":
            logger.info("Energy window of %g kJ/mol exceeded; rejecting %d remaining",
                        self.cfg.energy_cutoff, len(rest))
        else:
            logger.info("Rank cap %d reached; rejecting %d remaining",
                        self.cfg.max_rank, len(rest))
        for s in rest:
            self._reject(result, Rejection(s, cause, energy_gap=self.energy_gap(s)))

    def _progress(self, result: PassResult, done: int, total: int) -> None:
        st = result.statistics
        logger.info("%s %5.1f%% | accepted %d | rejected %d | thresh %d | "
                    "searched %d | found %d | rule hits %d | dE %.2f kJ/mol",
                    result.name, 100.0 * done / max(total, 1), st.accepted,
                    st.rejected, st.threshold_rejected, st.reorder_searches,
                    st.reorder_succeeded, st.rule_hits, self.delta_e)

    # ── passes ─────────────────────────────────────────────────────────

    def first_pass(self, candidates: Sequence[Structure]) -> PassResult:
        """Plain RMSD without relabelling; calibrates the pre-filter."""
        result = PassResult("1st Pass")
        self.statistic_log.section("Results of 1st Pass")
        comparator = self.comparator_factory()
        references = list(self.seed)
        cfg = self.cfg
        t0 = time.time()

        for pos, cand in enumerate(candidates):
            if self.stop_requested():
                result.cancelled = True
                result.unprocessed = list(candidates[pos:])
                break
            if self._rank_reached(len(result.accepted)):
                self._reject_rest(result, candidates[pos:], "rank")
                break
            if not cand.valid:
                self._reject(result, Rejection(cand, "invalid"))
                continue
            if not references:
                self._accept(result, cand, "1st")
                references.append(cand)
                continue

            gap = self.energy_gap(cand)
            self.delta_e = gap
            if self._outside_window(gap):
                self._reject_rest(result, candidates[pos:], "energy")
                break

            rejection = None
            for ref in references:
                if self.stop_requested():
                    result.cancelled = True
                    break
                rmsd = comparator.align(ref, cand)
                diff_rot, diff_fp = coarse_deltas(cand, ref)
                self.thresholds.observe(rmsd, diff_rot, diff_fp, self.rmsd_threshold,
                                        cfg.scale_tight, cfg.scale_loose)
                self._remember_pair(ref, cand)
                topo = None
                if cfg.max_htopo_diff != -1 and rmsd <= self.rmsd_threshold:
                    topo = comparator.hbond_topology_difference(ref, cand)
                if is_duplicate(rmsd, topo, self.rmsd_threshold, cfg.max_htopo_diff):
                    rejection = Rejection(cand, "rmsd", reference=ref, rmsd=rmsd,
                                          energy_gap=gap)
                    break
            if result.cancelled:
                result.unprocessed = list(candidates[pos:])
                break

            if rejection is not None:
                self._reject(result, rejection)
            else:
                self._accept(result, cand, "1st")
                references.append(cand)
            self._progress(result, pos + 1, len(candidates))

        result.elapsed_s = time.time() - t0
        return result

    def provisional_pass(self, candidates: Sequence[Structure]) -> PassResult:
        """Stand-in for a skipped first pass: keep every valid candidate."""
        result = PassResult("1st Pass (skipped)")
        for cand in candidates:
            if cand.valid:
                self._accept(result, cand, "")
            else:
                self._reject(result, Rejection(cand, "invalid"))
        return result

    def reorder_pass(self, candidates: Sequence[Structure], reuse_only: bool = False,
                     name: Optional[str] = None) -> PassResult:
        """Pre-filter, then cached rules and relabelling search on the pool."""
        name = name or ("3rd Pass" if reuse_only else "2nd Pass")
        key = "3rd" if reuse_only else "2nd"
        result = PassResult(name)
        self.statistic_log.section(f"Results of {name}")
        cfg = self.cfg
        st = result.statistics
        t0 = time.time()
        logger.info("%s: %d candidates, %d cached rules, thresholds %s",
                    name, len(candidates), len(self.rule_cache),
                    self.thresholds.as_dict())

        with WorkerPool(self.comparator_factory, cfg.threads) as pool:
            for ref in self.seed:
                pool.add(ref)

            for pos, cand in enumerate(candidates):
                if self.stop_requested():
                    result.cancelled = True
                    # unprocessed candidates stay provisionally accepted
                    result.accepted.extend(candidates[pos:])
                    break
                if not pool.workers:
                    self._accept(result, cand, key)
                    pool.add(cand)
                    if self._rank_reached(len(result.accepted)):
                        self._reject_rest(result, candidates[pos + 1:], "rank")
                        break
                    continue

                gap = self.energy_gap(cand)
                self.delta_e = gap
                if self._outside_window(gap):
                    self._reject_rest(result, candidates[pos:], "energy")
                    break

                selected = []
                tight = None
                for worker in pool.workers:
                    diff_rot, diff_fp = coarse_deltas(cand, worker.reference)
                    verdict = self.thresholds.classify(diff_rot, diff_fp)
                    if verdict is Verdict.DISTINCT:
                        continue
                    if verdict is Verdict.DUPLICATE:
                        tight = Rejection(cand, "threshold", reference=worker.reference,
                                          diff_rot=diff_rot, diff_fp=diff_fp,
                                          energy_gap=gap)
                        break
                    selected.append((worker, diff_rot, diff_fp))

                if tight is not None:
                    self._reject(result, tight)
                    self._progress(result, pos + 1, len(candidates))
                    continue

                allow_search = not reuse_only and self._search_allowed(gap)
                outcomes = pool.compare(
                    cand, [w for w, _, _ in selected], self.rule_cache.snapshot(),
                    self.rmsd_threshold, cfg.max_htopo_diff,
                    reuse_only=reuse_only, allow_search=allow_search)

                rejection = None
                for (worker, diff_rot, diff_fp), outcome in zip(selected, outcomes):
                    st.reorder_searches += int(outcome.searched)
                    self.thresholds.observe(outcome.rmsd, diff_rot, diff_fp,
                                            self.rmsd_threshold, cfg.scale_tight,
                                            cfg.scale_loose)
                    self._remember_pair(worker.reference, cand)
                    if not outcome.duplicate or rejection is not None:
                        continue
                    if outcome.cause == "rule":
                        st.rule_hits += 1
                    else:
                        st.reorder_succeeded += 1
                        if not reuse_only and self.rule_cache.insert(outcome.rule):
                            logger.debug("New reorder rule %s", list(outcome.rule))
                    rejection = Rejection(cand, outcome.cause, reference=worker.reference,
                                          rmsd=outcome.rmsd, rule=outcome.rule,
                                          energy_gap=gap)

                if rejection is not None:
                    self._reject(result, rejection)
                else:
                    self._accept(result, cand, key)
                    pool.add(cand)
                self._progress(result, pos + 1, len(candidates))

                if self._rank_reached(len(result.accepted)):
                    self._reject_rest(result, candidates[pos + 1:], "rank")
                    break

        result.elapsed_s = time.time() - t0
        return result

    def finalize(self, accepted: Sequence[Structure]) -> Tuple[List[Structure], List[Rejection]]:
        """Trim by rank cap and energy window."""
        kept: List[Structure] = []
        trimmed: List[Rejection] = []
        for s in accepted:
            gap = self.energy_gap(s)
            if self._rank_reached(len(kept)):
                trimmed.append(Rejection(s, "rank", energy_gap=gap))
            elif self._outside_window(gap):
                trimmed.append(Rejection(s, "energy", energy_gap=gap))
            else:
                kept.append(s)
        if trimmed:
            logger.info("Finalize trimmed %d structures", len(trimmed))
        return kept, trimmed

    def run(self, queue: CandidateQueue) -> ScanOutcome:
        self.seed = list(queue.seed)
        self.lowest_energy = queue.lowest_energy
        candidates = list(queue)
        passes: List[PassResult] = []

        if self.cfg.skip_first:
            current = self.provisional_pass(candidates)
        else:
            current = self.first_pass(candidates)
        passes.append(current)

        if not current.cancelled and not self.prevent_reorder:
            current = self.reorder_pass(current.accepted, reuse_only=False)
            passes.append(current)
        if not current.cancelled and self.cfg.do_third:
            current = self.reorder_pass(current.accepted, reuse_only=True)
            passes.append(current)

        cancelled = current.cancelled
        if not cancelled:
            self.delta_e = -1.0
        else:
            logger.warning("Scan cancelled during %s", current.name)

        final, trimmed = self.finalize(current.accepted)
        self.statistic_log.section("Finalize")
        for rej in trimmed:
            self.statistic_log.record(rej, self.rmsd_threshold, self.cfg.max_rank,
                                      self.cfg.energy_cutoff)

        rejected = [s for p in passes for s in p.rejected] + [r.structure for r in trimmed]
        threshold = [s for p in passes for s in p.threshold_rejected]
        joined = (self.seed + final) if self.seed else []
        return ScanOutcome(
            accepted=final,
            rejected=rejected,
            threshold_rejected=threshold,
            joined=joined,
            unprocessed=passes[0].unprocessed,
            passes=passes,
            cancelled=cancelled,
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def scan_conformers(
    input_path: str | Path,
    outdir: str | Path | None = None,
    cfg: ScanConfig | None = None,
    comparator_factory: Optional[ComparatorFactory] = None,
    energy_backend: Optional[Callable] = None,
    stop_requested: Optional[Callable[[], bool]] = None,
) -> ScanResult:
    """End-to-end deduplication of one XYZ ensemble.

    Parameters
    ----------
    input_path : str | Path
        Multi-frame ``.xyz`` / ``.trj`` file.
    outdir : Path, optional
        Output directory (created if absent); defaults to the input's folder.
    cfg : ScanConfig, optional
        Tuneable parameters; uses defaults when *None*.
    comparator_factory : callable, optional
        Zero-argument factory for :class:`StructureComparator` instances.
    energy_backend : callable, optional
        ``Mol -> Hartree``; defaults to the backend named by ``cfg.method``.
    stop_requested : callable, optional
        Cancellation poll; defaults to checking for ``<outdir>/stop``.

    Returns
    -------
    ScanResult
    """
    if cfg is None:
        cfg = ScanConfig()

    input_path = Path(input_path)
    outdir = Path(outdir) if outdir is not None else input_path.parent
    outdir.mkdir(parents=True, exist_ok=True)
    handler = _setup_logging(outdir)

    try:
        return _run_scan(input_path, outdir, cfg, comparator_factory,
                         energy_backend, stop_requested)
    finally:
        logger.removeHandler(handler)
        handler.close()


def _run_scan(input_path, outdir, cfg, comparator_factory, energy_backend,
              stop_requested) -> ScanResult:
    result = ScanResult(success=False, input_path=str(input_path), outdir=outdir)
    basename = input_path.stem
    t0_total = time.time()

    logger.info("=== Conformer scan: %s ===", input_path)
    logger.info("RMSD threshold %.3f Å (%s)", cfg.effective_rmsd_threshold,
                "heavy atoms" if cfg.heavy_only else "all atoms")

    # ── 1. ingestion ───────────────────────────────────────────────────
    fp_params = FingerprintParams.from_config(cfg)
    t0 = time.time()
    try:
        if energy_backend is None:
            energy_backend = get_energy_backend(cfg.method, cfg.charge)
        structures = read_structures(
            input_path, fp_params=fp_params, energy_backend=energy_backend,
            force_backend=bool(cfg.method), noname=cfg.noname)
        seed: List[Structure] = []
        if cfg.accepted_file:
            seed = read_structures(
                cfg.accepted_file, fp_params=fp_params,
                energy_backend=energy_backend, force_backend=bool(cfg.method),
                start_index=len(structures))
    except InputError as exc:
        msg = f"Input failed: {exc}"
        logger.error(msg)
        result.errors.append(msg)
        _write_metadata(result, cfg, outdir)
        return result
    result.timings["read_s"] = time.time() - t0
    result.num_input = len(structures)
    result.num_seed = len(seed)
    if seed:
        logger.info("Seeded with %d previously accepted structures", len(seed))

    # ── 2. restart ─────────────────────────────────────────────────────
    state = RestartState()
    if cfg.restart:
        state = load_restart(discover_restart_files(outdir, cfg.restart_files))
    rule_cache = ReorderRuleCache(state.rules)

    # ── 3. passes ──────────────────────────────────────────────────────
    paths = _output_paths(outdir, basename)
    pass_files: Dict[str, Path] = {}
    if not cfg.fewer_files:
        for key in ("1st", "2nd"):
            paths[key].write_text("")
            pass_files[key] = paths[key]
    stat_log = StatisticLog(None if cfg.fewer_files else paths["statistic"])

    if stop_requested is None:
        stop_file = outdir / STOP_FILE
        stop_requested = stop_file.exists

    scan = ConformerScan(cfg, comparator_factory=comparator_factory,
                         rule_cache=rule_cache, restart_state=state,
                         stop_requested=stop_requested, statistic_log=stat_log,
                         pass_files=pass_files)
    queue = CandidateQueue(structures, skip=cfg.skip, seed=seed)
    outcome = scan.run(queue)

    for p in outcome.passes:
        result.pass_statistics[p.name] = p.statistics
        result.timings[f"{p.name}_s"] = p.elapsed_s

    # ── 4. outputs ─────────────────────────────────────────────────────
    if cfg.restart:
        save_restart(restart_path(outdir, basename), rule_cache.to_list(),
                     scan.reference_last_energy, scan.target_last_energy,
                     scan.delta_e)
        result.outputs["restart"] = str(restart_path(outdir, basename))
    write_xyz(outcome.accepted, paths["accepted"])
    result.outputs["accepted"] = str(paths["accepted"])
    if not cfg.fewer_files:
        write_xyz(outcome.rejected, paths["rejected"])
        write_xyz(outcome.threshold_rejected, paths["thresh"])
        result.outputs.update(rejected=str(paths["rejected"]),
                              thresh=str(paths["thresh"]),
                              statistic=str(paths["statistic"]))
    if outcome.joined:
        write_xyz(outcome.joined, paths["joined"])
        result.outputs["joined"] = str(paths["joined"])

    result.accepted = outcome.accepted
    result.rejected = outcome.rejected
    result.threshold_rejected = outcome.threshold_rejected
    result.joined = outcome.joined
    result.unprocessed = outcome.unprocessed
    result.thresholds = scan.thresholds.as_dict()
    result.num_rules = len(rule_cache)
    result.cancelled = outcome.cancelled
    result.success = True
    result.timings["total_s"] = time.time() - t0_total

    _write_metadata(result, cfg, outdir)
    logger.info("=== Done: %d accepted, %d rejected, %d below thresholds "
                "(%.1f s total) ===", len(result.accepted), len(result.rejected),
                len(result.threshold_rejected), result.timings["total_s"])
    return result


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

def _output_paths(outdir: Path, basename: str) -> Dict[str, Path]:
    return {
        key: outdir / f"{basename}.{key}.{ext}"
        for key, ext in (("accepted", "xyz"), ("rejected", "xyz"), ("thresh", "xyz"),
                         ("joined", "xyz"), ("1st", "xyz"), ("2nd", "xyz"),
                         ("statistic", "log"))
    }


def _write_metadata(result, cfg, outdir):
    """Write metadata.json with full provenance."""
    cfg._versions = _collect_versions()
    meta = {
        "parameters": cfg.to_dict(),
        "result_summary": {
            "success": result.success,
            "num_input": result.num_input,
            "num_seed": result.num_seed,
            "num_accepted": len(result.accepted),
            "num_rejected": len(result.rejected),
            "num_threshold_rejected": len(result.threshold_rejected),
            "num_unprocessed": len(result.unprocessed),
            "accepted_names": [s.name for s in result.accepted],
            "pass_statistics": {k: asdict(v) for k, v in result.pass_statistics.items()},
            "thresholds": result.thresholds,
            "num_rules": result.num_rules,
            "cancelled": result.cancelled,
            "timings": result.timings,
            "errors": result.errors,
        },
        "input": result.input_path,
        "outputs": result.outputs,
        "versions": cfg._versions,
    }
    meta_path = outdir / "metadata.json"
    meta_path.write_text(json.dumps(meta, indent=2, default=str))
    logger.info("Metadata: %s", meta_path)


def _collect_versions():
    versions = {
        "rdkit": _rdkit_version,
        "python": platform.python_version(),
        "platform": platform.platform(),
    }
    try:
        import numpy
        versions["numpy"] = numpy.__version__
    except ImportError:
        pass
    try:
        import scipy
        versions["scipy"] = scipy.__version__
    except ImportError:
        pass
    return versions


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def _setup_logging(outdir: Path) -> logging.Handler:
    log_fmt = "%(asctime)s [%(levelname)s] %(message)s"
    logging.basicConfig(level=logging.INFO, format=log_fmt)

    # Also log to file
    fh = logging.FileHandler(outdir / LOG_FILE, mode="w")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(log_fmt))
    logger.addHandler(fh)
    return fh

#!/usr/bin/env python3
"""
Tests for the deduplication passes and the end-to-end scan.

Run from the repo root:
    python -m pytest tests/test_scan.py -v

Pass-level tests drive :class:`ConformerScan` with a scripted comparator so
that RMSD outcomes and search counts are exact; the end-to-end tests use the
real Kabsch comparator on small XYZ ensembles.
"""

import json
import sys
import threading
from collections import Counter
from pathlib import Path

import numpy as np
import pytest

# Ensure repo root is importable
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from confscan.comparator import StructureComparator
from confscan.config import ScanConfig
from confscan.core import ConformerScan, scan_conformers
from confscan.queue import CandidateQueue
from confscan.restart import RestartState, load_restart, restart_path, save_restart
from confscan.rules import ReorderRuleCache
from confscan.structure import Structure


ELEMENTS = ["C", "H", "H", "H", "H"]
BASE = np.array([
    [0.000, 0.000, 0.000],
    [0.629, 0.629, 0.629],
    [-0.629, -0.629, 0.629],
    [-0.629, 0.629, -0.629],
    [0.629, -0.629, -0.629],
])
IDENTITY = (0, 1, 2, 3, 4)
SWAP = (0, 2, 1, 3, 4)


class ScriptedComparator(StructureComparator):
    """Duplicates are decided by name, not geometry.

    ``"B"`` and ``"B*"`` are the same conformer; the ``*`` marks a copy whose
    hydrogens 1 and 2 are relabelled, so only :data:`SWAP` collapses them.
    """

    def __init__(self, calls, lock):
        self.calls = calls
        self.lock = lock

    def _count(self, key):
        with self.lock:
            self.calls[key] += 1

    @staticmethod
    def _group(s):
        return s.name.rstrip("*").split("#")[0]

    @staticmethod
    def _relabelled(s):
        return s.name.endswith("*")

    def _rule_needed(self, ref, tgt):
        return SWAP if self._relabelled(ref) != self._relabelled(tgt) else IDENTITY

    def rule_length(self, structure):
        return structure.atom_count

    def align(self, reference, target):
        self._count("align")
        if (self._group(reference) == self._group(target)
                and self._rule_needed(reference, target) == IDENTITY):
            return 0.0
        return 5.0

    def align_with_reorder(self, reference, target, threads=1):
        self._count("search")
        if self._group(reference) == self._group(target):
            return 0.0, self._rule_needed(reference, target)
        return 5.0, IDENTITY

    def rmsd_for_rule(self, reference, target, rule):
        self._count("rule")
        if (self._group(reference) == self._group(target)
                and tuple(rule) == self._rule_needed(reference, target)):
            return 0.0
        return 5.0

    def hbond_topology_difference(self, reference, target, rule=None):
        return 0


@pytest.fixture
def scripted():
    calls = Counter()
    lock = threading.Lock()
    return calls, (lambda: ScriptedComparator(calls, lock))


def _make(names_energies, start=0):
    return [Structure.from_geometry(start + i, name, ELEMENTS, BASE, energy)
            for i, (name, energy) in enumerate(names_energies)]


def _names(structures):
    return [s.name for s in structures]


# ---------------------------------------------------------------------------
# Pass behaviour
# ---------------------------------------------------------------------------

class TestPasses:

    def test_identical_structures_collapse_in_first_pass(self, scripted):
        calls, factory = scripted
        items = _make([("A", 0.0), ("A#2", 0.1), ("A#3", 0.2)])
        scan = ConformerScan(ScanConfig(), comparator_factory=factory)
        out = scan.run(CandidateQueue(items))

        assert _names(out.accepted) == ["A"]
        assert _names(out.rejected) == ["A#2", "A#3"]
        assert calls["search"] == 0
        assert all(p.statistics.reorder_searches == 0 for p in out.passes)
        assert [r.cause for r in out.passes[0].rejections] == ["rmsd", "rmsd"]

    def test_relabelled_pair_needs_reorder_pass(self, scripted):
        calls, factory = scripted
        items = _make([("B", 0.0), ("B*", 0.001)])
        cache = ReorderRuleCache()
        scan = ConformerScan(ScanConfig(), comparator_factory=factory, rule_cache=cache)
        out = scan.run(CandidateQueue(items))

        first, second = out.passes
        assert _names(first.accepted) == ["B", "B*"]
        assert _names(second.rejected) == ["B*"]
        assert _names(out.accepted) == ["B"]
        assert second.statistics.reorder_succeeded == 1
        assert SWAP in cache
        assert second.rejections[0].cause == "rmsd"
        assert second.rejections[0].rule == SWAP

    def test_cached_rule_avoids_search(self, scripted):
        calls, factory = scripted
        items = _make([("B", 0.0), ("B*", 0.001)])
        cache = ReorderRuleCache([SWAP])
        scan = ConformerScan(ScanConfig(), comparator_factory=factory, rule_cache=cache)
        result = scan.reorder_pass(items, reuse_only=True)

        assert _names(result.accepted) == ["B"]
        assert _names(result.rejected) == ["B*"]
        assert result.statistics.rule_hits == 1
        assert result.statistics.reorder_searches == 0
        assert calls["search"] == 0
        assert result.rejections[0].cause == "rule"
        assert len(cache) == 1

    def test_reuse_only_pass_leaves_cache_untouched(self, scripted):
        calls, factory = scripted
        items = _make([("B", 0.0), ("B*", 0.001), ("C", 0.002)])
        cache = ReorderRuleCache([(4, 3, 2, 1, 0)])
        scan = ConformerScan(ScanConfig(), comparator_factory=factory, rule_cache=cache)
        result = scan.reorder_pass(items, reuse_only=True)

        assert _names(result.accepted) == ["B", "B*", "C"]
        assert cache.snapshot() == ((4, 3, 2, 1, 0),)
        assert calls["search"] == 0

    def test_energy_cutoff_stops_before_any_rmsd(self, scripted):
        calls, factory = scripted
        # 0.01 Hartree = 26.3 kJ/mol above the first structure
        items = _make([("A", 0.0), ("D", 0.01), ("E", 0.02)])
        scan = ConformerScan(ScanConfig(energy_cutoff=10.0), comparator_factory=factory)
        out = scan.run(CandidateQueue(items))

        assert _names(out.accepted) == ["A"]
        assert _names(out.rejected) == ["D", "E"]
        assert calls["align"] == 0
        assert calls["search"] == 0
        assert {r.cause for r in out.passes[0].rejections} == {"energy"}

    def test_rank_cap(self, scripted):
        _, factory = scripted
        items = _make([("A", 0.0), ("B", 0.1), ("C", 0.2), ("D", 0.3)])
        scan = ConformerScan(ScanConfig(max_rank=2), comparator_factory=factory)
        out = scan.run(CandidateQueue(items))

        assert _names(out.accepted) == ["A", "B"]
        assert _names(out.rejected) == ["C", "D"]
        assert {r.cause for r in out.passes[0].rejections} == {"rank"}

    def test_rank_cap_applies_to_first_acceptance_of_reorder_pass(self, scripted):
        calls, factory = scripted
        items = _make([("A", 0.0), ("B", 0.1), ("C", 0.2)])
        cfg = ScanConfig(skip_first=True, max_rank=1)
        out = ConformerScan(cfg, comparator_factory=factory).run(CandidateQueue(items))

        second = out.passes[1]
        assert _names(second.accepted) == ["A"]
        assert _names(second.rejected) == ["B", "C"]
        assert {r.cause for r in second.rejections} == {"rank"}
        assert calls["search"] == 0
        assert calls["rule"] == 0
        assert _names(out.accepted) == ["A"]

    def test_invalid_geometry_is_rejected(self, scripted):
        _, factory = scripted
        squashed = BASE.copy()
        squashed[2] = squashed[1] + 0.05
        items = _make([("A", 0.0)]) + [
            Structure.from_geometry(1, "X", ELEMENTS, squashed, -1.0)]
        out = ConformerScan(ScanConfig(), comparator_factory=factory).run(
            CandidateQueue(items))

        assert _names(out.accepted) == ["A"]
        assert _names(out.rejected) == ["X"]
        assert out.passes[0].rejections[0].cause == "invalid"

    def test_skip_first_goes_straight_to_reorder(self, scripted):
        calls, factory = scripted
        items = _make([("A", 0.0), ("A#2", 0.1), ("B", 0.2)])
        out = ConformerScan(ScanConfig(skip_first=True), comparator_factory=factory).run(
            CandidateQueue(items))

        assert calls["align"] == 0
        assert _names(out.passes[0].accepted) == ["A", "A#2", "B"]
        assert _names(out.accepted) == ["A", "B"]

    def test_prevent_reorder_runs_first_pass_only(self, scripted):
        calls, factory = scripted
        items = _make([("B", 0.0), ("B*", 0.001)])
        out = ConformerScan(ScanConfig(prevent_reorder=True), comparator_factory=factory).run(
            CandidateQueue(items))

        assert len(out.passes) == 1
        assert _names(out.accepted) == ["B", "B*"]
        assert calls["search"] == 0

    def test_third_pass_runs_when_enabled(self, scripted):
        _, factory = scripted
        items = _make([("A", 0.0), ("B", 0.1)])
        out = ConformerScan(ScanConfig(do_third=True), comparator_factory=factory).run(
            CandidateQueue(items))
        assert [p.name for p in out.passes] == ["1st Pass", "2nd Pass", "3rd Pass"]

    def test_seed_structures_are_references_only(self, scripted):
        _, factory = scripted
        seed = _make([("A", -0.5)], start=10)
        items = _make([("A#2", 0.0), ("B", 0.1)])
        out = ConformerScan(ScanConfig(), comparator_factory=factory).run(
            CandidateQueue(items, seed=seed))

        assert _names(out.accepted) == ["B"]
        assert _names(out.rejected) == ["A#2"]
        assert _names(out.joined) == ["A", "B"]

    def test_tight_threshold_rejects_without_comparator(self, scripted):
        calls, factory = scripted
        items = _make([("A", 0.0), ("Q", 0.1)])
        scan = ConformerScan(ScanConfig(), comparator_factory=factory)
        scan.thresholds.rot_tight = 1.0
        scan.thresholds.fp_tight = 1.0
        result = scan.reorder_pass(items)

        assert _names(result.threshold_rejected) == ["Q"]
        assert result.rejected == []
        assert calls["rule"] == 0 and calls["search"] == 0
        assert result.rejections[0].cause == "threshold"

    def test_loose_threshold_skips_distinct_references(self, scripted):
        calls, factory = scripted
        stretched = Structure.from_geometry(1, "W", ELEMENTS, BASE * 2.0, 0.1)
        items = _make([("A", 0.0)]) + [stretched]
        scan = ConformerScan(ScanConfig(), comparator_factory=factory)
        scan.thresholds.rot_loose = 1e-3
        scan.thresholds.fp_loose = 1e-6
        result = scan.reorder_pass(items)

        assert _names(result.accepted) == ["A", "W"]
        assert calls["search"] == 0

    def test_cancellation_in_first_pass(self, scripted):
        _, factory = scripted
        items = _make([("A", 0.0), ("B", 0.1)])
        out = ConformerScan(ScanConfig(), comparator_factory=factory,
                            stop_requested=lambda: True).run(CandidateQueue(items))

        assert out.cancelled
        assert len(out.passes) == 1
        assert out.accepted == []
        assert _names(out.unprocessed) == ["A", "B"]

    def test_cancellation_in_reorder_pass_keeps_candidates(self, scripted):
        _, factory = scripted
        items = _make([("B", 0.0), ("B*", 0.001), ("C", 0.002)])
        polls = Counter()

        def stop():
            polls["n"] += 1
            return polls["n"] > 1

        scan = ConformerScan(ScanConfig(), comparator_factory=factory, stop_requested=stop)
        result = scan.reorder_pass(items)

        assert result.cancelled
        assert _names(result.accepted) == ["B", "B*", "C"]

    def test_restart_suppresses_search_below_last_de(self, scripted):
        calls, factory = scripted
        items = _make([("B", 0.0), ("B*", 0.001)])
        state = RestartState(sources=[Path("previous.restart.json")], delta_e=100.0)
        scan = ConformerScan(ScanConfig(), comparator_factory=factory, restart_state=state)
        result = scan.reorder_pass(items)

        assert _names(result.accepted) == ["B", "B*"]
        assert calls["search"] == 0

    def test_restart_suppression_lifts_at_last_de(self, scripted):
        calls, factory = scripted
        items = _make([("B", 0.0), ("B*", 0.001)])
        state = RestartState(sources=[Path("previous.restart.json")], delta_e=1.0)
        scan = ConformerScan(ScanConfig(), comparator_factory=factory, restart_state=state)
        result = scan.reorder_pass(items)

        assert _names(result.rejected) == ["B*"]
        assert calls["search"] == 1
        assert not scan.use_restart

    def test_multiple_restart_sources_force_prevent_reorder(self, scripted):
        _, factory = scripted
        state = RestartState(sources=[Path("a"), Path("b")])
        scan = ConformerScan(ScanConfig(), comparator_factory=factory, restart_state=state)
        assert scan.prevent_reorder

    def test_finalize_applies_energy_window(self, scripted):
        _, factory = scripted
        scan = ConformerScan(ScanConfig(energy_cutoff=5.0), comparator_factory=factory)
        scan.lowest_energy = 0.0
        kept, trimmed = scan.finalize(_make([("A", 0.0), ("B", 0.001), ("C", 0.01)]))
        assert _names(kept) == ["A", "B"]
        assert [r.cause for r in trimmed] == ["energy"]


# ---------------------------------------------------------------------------
# Global properties
# ---------------------------------------------------------------------------

def _mixed_ensemble():
    return _make([
        ("A", 0.000), ("B", 0.001), ("A*", 0.002), ("C", 0.003), ("B#2", 0.004),
        ("D*", 0.005), ("C*", 0.006), ("D", 0.007), ("E", 0.008), ("A#2", 0.009),
    ])


class TestProperties:

    def test_same_result_for_any_thread_count(self, scripted):
        _, factory = scripted
        runs = []
        for threads in (1, 4):
            cfg = ScanConfig(threads=threads, do_third=True)
            out = ConformerScan(cfg, comparator_factory=factory).run(
                CandidateQueue(_mixed_ensemble()))
            runs.append((_names(out.accepted), _names(out.rejected)))
        assert runs[0] == runs[1]

    def test_accepted_set_is_duplicate_free(self, scripted):
        _, factory = scripted
        cfg = ScanConfig(threads=3)
        out = ConformerScan(cfg, comparator_factory=factory).run(
            CandidateQueue(_mixed_ensemble()))

        assert _names(out.accepted) == ["A", "B", "C", "D*", "E"]
        cmp = factory()
        for i, a in enumerate(out.accepted):
            for b in out.accepted[i + 1:]:
                rmsd, _ = cmp.align_with_reorder(a, b)
                assert rmsd > cfg.effective_rmsd_threshold

    def test_partitions_are_disjoint_and_complete(self, scripted):
        _, factory = scripted
        items = _mixed_ensemble()
        out = ConformerScan(ScanConfig(), comparator_factory=factory).run(
            CandidateQueue(items))
        seen = _names(out.accepted) + _names(out.rejected) + _names(out.threshold_rejected)
        assert sorted(seen) == sorted(_names(items))


# ---------------------------------------------------------------------------
# End-to-end with the Kabsch comparator
# ---------------------------------------------------------------------------

METHANOL = np.array([
    [-0.0460, 0.6630, 0.0000],
    [-0.0460, -0.7570, 0.0000],
    [-1.0860, 0.9750, 0.0000],
    [0.4390, 1.0700, 0.8900],
    [0.4390, 1.0700, -0.8900],
    [0.8680, -1.0470, 0.0000],
])
METHANOL_ELEMENTS = ["C", "O", "H", "H", "H", "H"]


def _frame(coords, comment):
    lines = [str(len(coords)), comment]
    for e, (x, y, z) in zip(METHANOL_ELEMENTS, coords):
        lines.append(f"{e} {x:.6f} {y:.6f} {z:.6f}")
    return "\n".join(lines) + "\n"


@pytest.fixture
def ensemble(tmp_path):
    rotated = METHANOL @ np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]]).T
    stretched = METHANOL * 2.5
    path = tmp_path / "meoh.xyz"
    path.write_text(
        _frame(METHANOL, " energy: -10.000000 gnorm: 0.0001")
        + _frame(rotated + 4.0, "-9.999 rotated")
        + _frame(stretched, "-9.990 stretched")
    )
    return path


class TestScanConformers:

    def test_end_to_end(self, ensemble, tmp_path):
        outdir = tmp_path / "out"
        result = scan_conformers(ensemble, outdir, ScanConfig())

        assert result.success, f"Scan failed: {result.errors}"
        assert len(result.accepted) == 2
        assert len(result.rejected) == 1
        assert result.rejected[0].name == "rotated"
        assert not result.cancelled

        for name in ("meoh.accepted.xyz", "meoh.rejected.xyz", "meoh.thresh.xyz",
                     "meoh.1st.xyz", "meoh.2nd.xyz", "meoh.statistic.log",
                     "meoh.restart.json", "metadata.json", "conformer_scan.log"):
            assert (outdir / name).exists(), name
        assert not (outdir / "meoh.joined.xyz").exists()

        assert (outdir / "meoh.accepted.xyz").read_text().count("stretched") == 1
        assert "rejected: RMSD" in (outdir / "meoh.statistic.log").read_text()

        state = load_restart([restart_path(outdir, "meoh")])
        assert state.delta_e == -1.0

        meta = json.loads((outdir / "metadata.json").read_text())
        assert meta["result_summary"]["success"] is True
        assert meta["result_summary"]["num_accepted"] == 2
        assert "rdkit" in meta["versions"]
        assert meta["parameters"]["effective_rmsd_threshold"] == 0.9

    def test_fewer_files(self, ensemble, tmp_path):
        outdir = tmp_path / "out"
        result = scan_conformers(ensemble, outdir, ScanConfig(fewer_files=True))
        assert result.success
        assert (outdir / "meoh.accepted.xyz").exists()
        for name in ("meoh.rejected.xyz", "meoh.thresh.xyz", "meoh.1st.xyz",
                     "meoh.2nd.xyz", "meoh.statistic.log"):
            assert not (outdir / name).exists(), name

    def test_seed_file_produces_joined_stream(self, ensemble, tmp_path):
        seed = tmp_path / "old.xyz"
        seed.write_text(_frame(METHANOL, "-10.5 previous"))
        outdir = tmp_path / "out"
        result = scan_conformers(ensemble, outdir, ScanConfig(accepted_file=str(seed)))

        assert result.success
        assert result.num_seed == 1
        assert result.joined[0].name == "previous"
        assert result.joined[0].index == 3
        assert "previous" not in [s.name for s in result.accepted]
        assert (outdir / "meoh.joined.xyz").exists()

    def test_stop_file_cancels(self, ensemble, tmp_path):
        outdir = tmp_path / "out"
        outdir.mkdir()
        (outdir / "stop").write_text("")
        result = scan_conformers(ensemble, outdir, ScanConfig())

        assert result.success
        assert result.cancelled
        assert result.accepted == []
        assert len(result.unprocessed) == 3

    def test_restart_file_is_reused(self, ensemble, tmp_path):
        outdir = tmp_path / "out"
        first = scan_conformers(ensemble, outdir, ScanConfig())
        second = scan_conformers(ensemble, outdir, ScanConfig())
        assert first.success and second.success
        assert second.num_rules >= first.num_rules
        assert [s.name for s in second.accepted] == [s.name for s in first.accepted]

    def test_cached_rule_collapses_relabelled_copy_in_third_pass(self, tmp_path):
        # hydroxyl and methyl-anti hydrogens exchanged
        rule = [0, 1, 5, 3, 4, 2]
        path = tmp_path / "meoh.xyz"
        path.write_text(_frame(METHANOL, "-10.000 base")
                        + _frame(METHANOL[rule], "-9.999 relabelled"))
        outdir = tmp_path / "out"
        outdir.mkdir()
        save_restart(restart_path(outdir, "meoh"), [rule], 0.0, 0.0, -1.0)

        cfg = ScanConfig(rmsd_threshold=0.3, prevent_reorder=True, do_third=True)
        result = scan_conformers(path, outdir, cfg)

        assert result.success, f"Scan failed: {result.errors}"
        assert set(result.pass_statistics) == {"1st Pass", "3rd Pass"}
        assert result.pass_statistics["1st Pass"].rejected == 0
        third = result.pass_statistics["3rd Pass"]
        assert third.rule_hits == 1
        assert third.reorder_searches == 0
        assert [s.name for s in result.accepted] == ["base"]
        assert [s.name for s in result.rejected] == ["relabelled"]
        assert load_restart([restart_path(outdir, "meoh")]).rules == [rule]

    def test_malformed_restart_rule_is_ignored(self, ensemble, tmp_path):
        outdir = tmp_path / "out"
        outdir.mkdir()
        save_restart(restart_path(outdir, "meoh"), [[0, 1, 2, 3, 4, 99]], 0.0, 0.0, -1.0)
        result = scan_conformers(ensemble, outdir, ScanConfig(do_third=True))

        assert result.success, f"Scan failed: {result.errors}"
        assert len(result.accepted) == 2
        assert [s.name for s in result.rejected] == ["rotated"]
        assert [0, 1, 2, 3, 4, 99] not in load_restart(
            [restart_path(outdir, "meoh")]).rules

    def test_wrong_extension_fails_before_any_pass(self, tmp_path):
        bad = tmp_path / "meoh.sdf"
        bad.write_text("")
        result = scan_conformers(bad, tmp_path / "out", ScanConfig())

        assert not result.success
        assert any("Unsupported" in e for e in result.errors)
        assert (tmp_path / "out" / "metadata.json").exists()
        assert not (tmp_path / "out" / "meoh.accepted.xyz").exists()


# ---------------------------------------------------------------------------
# CLI entrypoint smoke test
# ---------------------------------------------------------------------------

class TestCLI:
    """Verify the CLI can be invoked programmatically."""

    def test_cli_scan(self, ensemble, tmp_path, capsys):
        from confscan.__main__ import main
        outdir = tmp_path / "cli"
        main([str(ensemble), "--outdir", str(outdir), "--threads", "2", "--do-third"])
        assert (outdir / "meoh.accepted.xyz").exists()
        assert "[OK] 2 accepted" in capsys.readouterr().out

    def test_cli_failure_exits_nonzero(self, tmp_path):
        from confscan.__main__ import main
        with pytest.raises(SystemExit) as exc:
            main([str(tmp_path / "missing.xyz"), "--outdir", str(tmp_path)])
        assert exc.value.code == 1

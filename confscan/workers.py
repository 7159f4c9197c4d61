"""
workers.py — per-reference comparison workers and the fork-join pool.

One :class:`ReferenceWorker` exists per accepted reference for the lifetime of
a pass; it owns a private comparator.  For every candidate the pool submits a
frozen :class:`ComparisonTask` to the selected workers, waits for all of them,
and hands the outcomes back in submission order.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from confscan.comparator import Rule, StructureComparator, is_duplicate
from confscan.rules import probe_rules
from confscan.structure import Structure

logger = logging.getLogger("confscan")

ComparatorFactory = Callable[[], StructureComparator]


@dataclass(frozen=True)
class ComparisonTask:
    candidate: Structure
    rules: Tuple[Rule, ...]
    rmsd_threshold: float
    max_topology_difference: int = -1
    reuse_only: bool = False
    allow_search: bool = True
    threads: int = 1


@dataclass(frozen=True)
class ComparisonOutcome:
    reference: Structure
    duplicate: bool = False
    cause: Optional[str] = None          # "rule" | "rmsd"
    rmsd: float = float("inf")
    rule: Optional[Rule] = None          # rule that produced the verdict
    searched: bool = False
    topology_difference: Optional[int] = None


class ReferenceWorker:
    """Compares candidates against one accepted reference."""

    def __init__(self, reference: Structure, comparator: StructureComparator):
        self.reference = reference
        self.comparator = comparator

    def run(self, task: ComparisonTask) -> ComparisonOutcome:
        match = probe_rules(task.rules, self.comparator, self.reference,
                            task.candidate, task.rmsd_threshold,
                            task.max_topology_difference)
        if match is not None:
            return ComparisonOutcome(
                reference=self.reference, duplicate=True, cause="rule",
                rmsd=match.rmsd, rule=match.rule,
                topology_difference=match.topology_difference)

        if task.reuse_only or not task.allow_search:
            return ComparisonOutcome(reference=self.reference)

        rmsd, rule = self.comparator.align_with_reorder(
            self.reference, task.candidate, threads=task.threads)
        topo = None
        if task.max_topology_difference != -1 and rmsd <= task.rmsd_threshold:
            topo = self.comparator.hbond_topology_difference(
                self.reference, task.candidate, rule)
        duplicate = is_duplicate(rmsd, topo, task.rmsd_threshold,
                                 task.max_topology_difference)
        return ComparisonOutcome(
            reference=self.reference,
            duplicate=duplicate,
            cause="rmsd" if duplicate else None,
            rmsd=rmsd,
            rule=rule if duplicate else None,
            searched=True,
            topology_difference=topo,
        )


class WorkerPool:
    """Thread pool holding one worker per accepted reference.

    Use as a context manager; the executor is shut down on exit.
    """

    def __init__(self, comparator_factory: ComparatorFactory, threads: int = 1):
        self.comparator_factory = comparator_factory
        self.threads = max(1, int(threads))
        self.workers: List[ReferenceWorker] = []
        self._executor = ThreadPoolExecutor(max_workers=self.threads)

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def add(self, reference: Structure) -> ReferenceWorker:
        worker = ReferenceWorker(reference, self.comparator_factory())
        self.workers.append(worker)
        return worker

    def __len__(self) -> int:
        return len(self.workers)

    def compare(self, candidate: Structure, workers: Sequence[ReferenceWorker],
                rules: Tuple[Rule, ...], rmsd_threshold: float,
                max_topology_difference: int = -1, reuse_only: bool = False,
                allow_search: bool = True) -> List[ComparisonOutcome]:
        """Run *candidate* against *workers* concurrently; outcomes in order."""
        if not workers:
            return []
        share = max(1, self.threads // len(workers))
        task = ComparisonTask(
            candidate=candidate,
            rules=rules,
            rmsd_threshold=rmsd_threshold,
            max_topology_difference=max_topology_difference,
            reuse_only=reuse_only,
            allow_search=allow_search,
            threads=share,
        )
        futures = [self._executor.submit(w.run, task) for w in workers]
        return [f.result() for f in futures]

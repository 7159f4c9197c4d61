"""
rules.py — cache of atom relabellings that have collapsed structure pairs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from confscan.comparator import Rule, StructureComparator, is_duplicate
from confscan.structure import Structure


@dataclass(frozen=True)
class RuleMatch:
    rmsd: float
    rule: Rule
    topology_difference: Optional[int] = None


def probe_rules(
    rules: Iterable[Sequence[int]],
    comparator: StructureComparator,
    reference: Structure,
    candidate: Structure,
    rmsd_threshold: float,
    max_topology_difference: int = -1,
) -> Optional[RuleMatch]:
    """First rule that makes *candidate* a duplicate of *reference*, if any.

    Rules of the wrong length for *candidate* are skipped.
    """
    length = comparator.rule_length(candidate)
    for rule in rules:
        if len(rule) != length or len(rule) == 0:
            continue
        rmsd = comparator.rmsd_for_rule(reference, candidate, rule)
        topo = None
        if max_topology_difference != -1 and rmsd <= rmsd_threshold:
            topo = comparator.hbond_topology_difference(reference, candidate, rule)
        if is_duplicate(rmsd, topo, rmsd_threshold, max_topology_difference):
            return RuleMatch(rmsd=rmsd, rule=tuple(rule), topology_difference=topo)
    return None


class ReorderRuleCache:
    """Insertion-ordered set of reorder rules.

    Only the orchestrator thread mutates the cache; workers receive an
    immutable :meth:`snapshot`.
    """

    def __init__(self, rules: Iterable[Sequence[int]] = ()):
        self._rules: List[Rule] = []
        self._seen = set()
        for rule in rules:
            self.insert(rule)

    def insert(self, rule: Optional[Sequence[int]]) -> bool:
        """Add *rule*; False when it is empty or already present."""
        if not rule:
            return False
        rule = tuple(int(i) for i in rule)
        if rule in self._seen:
            return False
        self._seen.add(rule)
        self._rules.append(rule)
        return True

    def extend(self, rules: Iterable[Sequence[int]]) -> int:
        return sum(self.insert(r) for r in rules)

    def snapshot(self) -> Tuple[Rule, ...]:
        return tuple(self._rules)

    def try_known_rules(
        self,
        comparator: StructureComparator,
        reference: Structure,
        candidate: Structure,
        rmsd_threshold: float,
        max_topology_difference: int = -1,
    ) -> Optional[RuleMatch]:
        return probe_rules(self._rules, comparator, reference, candidate,
                           rmsd_threshold, max_topology_difference)

    def to_list(self) -> List[List[int]]:
        return [list(r) for r in self._rules]

    def __contains__(self, rule) -> bool:
        return tuple(rule) in self._seen

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

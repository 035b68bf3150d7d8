# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .errors import CycleError, ValidationError
from .model import Job, PipelineModel

Edge = Tuple[str, str]  # (from, to): `to` waits for `from` to succeed


@dataclass
class JobGraph:
    """
    Directed acyclic job graph over the admitted job set.

    preds/succs hold every edge (stage-implicit + needs). `needs` keeps only
    the explicit edges, which decide artifact visibility.
    """
    jobs: Dict[str, Job]
    preds: Dict[str, Set[str]]
    succs: Dict[str, Set[str]]
    needs: Dict[str, Set[str]]
    order: List[str] = field(default_factory=list)

    def predecessors(self, name: str) -> Set[str]:
        return set(self.preds[name])

    def successors(self, name: str) -> Set[str]:
        return set(self.succs[name])

    def transitive_dependents(self, name: str) -> Set[str]:
        seen: Set[str] = set()
        q = deque(self.succs[name])
        while q:
            n = q.popleft()
            if n in seen:
                continue
            seen.add(n)
            q.extend(self.succs[n])
        return seen

    def transitive_needs(self, name: str) -> List[str]:
        """Every job reachable through explicit needs edges, in topological order."""
        seen: Set[str] = set()
        q = deque(self.needs[name])
        while q:
            n = q.popleft()
            if n in seen:
                continue
            seen.add(n)
            q.extend(self.needs[n])
        return [n for n in self.order if n in seen]

    def levels(self) -> List[List[str]]:
        indeg = {n: len(p) for n, p in self.preds.items()}
        return topo_levels(self.succs, indeg)


def _implicit_predecessors(job: Job, stages: Sequence[str], by_stage: Dict[str, List[str]]) -> List[str]:
    # jobs that declare needs opt out of the stage barrier entirely
    if job.needs is not None:
        return []
    idx = list(stages).index(job.stage)
    for prev in reversed(stages[:idx]):
        if by_stage.get(prev):
            return list(by_stage[prev])
    return []


def build(
    admitted: Iterable[Job],
    stages: Sequence[str],
    edges: Optional[Iterable[Edge]] = None,
) -> JobGraph:
    """
    Build the job DAG from stage order + explicit needs.

    Implicit edges: a job without `needs` depends on every admitted job of
    the nearest earlier stage that has admitted jobs. Needs pointing outside
    the admitted set are dropped (the trigger evaluator already excluded
    their dependents). Raises CycleError naming a minimal cycle.
    """
    jobs = list(admitted)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValidationError(f"Duplicate job names found: {dupes}", entity=dupes[0])

    by_name = {j.name: j for j in jobs}
    by_stage: Dict[str, List[str]] = {}
    for j in jobs:
        if j.stage not in stages:
            raise ValidationError(f"Job '{j.name}' uses undeclared stage '{j.stage}'", entity=j.name)
        by_stage.setdefault(j.stage, []).append(j.name)

    preds: Dict[str, Set[str]] = {n: set() for n in names}
    succs: Dict[str, Set[str]] = {n: set() for n in names}
    needs: Dict[str, Set[str]] = {n: set() for n in names}

    def add(src: str, dst: str) -> None:
        preds[dst].add(src)
        succs[src].add(dst)

    for j in jobs:
        for p in _implicit_predecessors(j, stages, by_stage):
            add(p, j.name)
        for n in j.needs or ():
            if n in by_name:
                add(n, j.name)
                needs[j.name].add(n)

    for src, dst in edges or ():
        if src in by_name and dst in by_name:
            add(src, dst)

    indeg = {n: len(p) for n, p in preds.items()}
    order, stuck = _kahn(names, succs, indeg)
    if stuck:
        raise CycleError(find_minimal_cycle(succs, restrict=stuck))

    return JobGraph(jobs=by_name, preds=preds, succs=succs, needs=needs, order=order)


def _kahn(names: List[str], succs: Dict[str, Set[str]], indeg: Dict[str, int]) -> Tuple[List[str], Set[str]]:
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(n for n in names if indeg[n] == 0)
    order: List[str] = []
    while q:
        node = q.popleft()
        order.append(node)
        for child in sorted(succs[node]):
            indeg[child] -= 1
            if indeg[child] == 0:
                q.append(child)
    stuck = {n for n, d in indeg.items() if d > 0}
    return order, stuck


def find_minimal_cycle(succs: Dict[str, Set[str]], restrict: Optional[Set[str]] = None) -> List[str]:
    """
    Shortest cycle in the graph, as an ordered list of job names.
    Ties go to the cycle through the alphabetically first job.
    """
    nodes = sorted(restrict if restrict is not None else succs)
    allowed = set(nodes)
    best: List[str] = []

    for start in nodes:
        parent: Dict[str, Optional[str]] = {start: None}
        q = deque([start])
        found: Optional[str] = None
        while q and found is None:
            node = q.popleft()
            for nxt in sorted(succs[node]):
                if nxt == start:
                    found = node
                    break
                if nxt in allowed and nxt not in parent:
                    parent[nxt] = node
                    q.append(nxt)
        if found is None:
            continue

        path = [found]
        while parent[path[-1]] is not None:
            path.append(parent[path[-1]])
        path.reverse()
        if not best or len(path) < len(best):
            best = path

    return best


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels".
    Jobs within a level have no ordering relationship and may run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ValidationError(f"DAG has a cycle. Stuck nodes: {remaining}", entity=remaining[0])

    return levels


def validate_model(model: PipelineModel) -> JobGraph:
    """Parse-time check: the full job set (before trigger filtering) must be acyclic."""
    return build(model.jobs, model.stages)

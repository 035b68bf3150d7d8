# triggers.py
from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence, Tuple

from .model import Job, PipelineModel, RefKind, Rule, RunContext

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# only / except keywords -> rule predicates
# ----------------------------------------------------------------------

_KEYWORDS = {
    "tags": dict(ref_kind=RefKind.TAG),
    "schedules": dict(source="schedule"),
    "web": dict(source="web"),
    "api": dict(source="api"),
    "pushes": dict(source="push"),
    "triggers": dict(source="trigger"),
}

# "branches" is any non-tag ref
_BRANCH_KINDS = (RefKind.BRANCH, RefKind.SCHEDULE, RefKind.MANUAL)


def is_regex(pattern: str) -> bool:
    return len(pattern) >= 2 and pattern.startswith("/") and pattern.endswith("/")


def ref_matches(pattern: str, ref_name: str) -> bool:
    """Exact ref name, or /regex/ searched anywhere in the name."""
    if is_regex(pattern):
        return re.search(pattern[1:-1], ref_name) is not None
    return pattern == ref_name


def keyword_rules(entry: str, include: bool) -> List[Rule]:
    """Translate one `only`/`except` entry into one or more rules."""
    if entry == "branches":
        return [Rule(include=include, ref_kind=k) for k in _BRANCH_KINDS]
    if entry in _KEYWORDS:
        return [Rule(include=include, **_KEYWORDS[entry])]
    return [Rule(include=include, ref=entry)]


def rules_from_only_except(only: Optional[Sequence[str]], except_: Optional[Sequence[str]]) -> Tuple[Rule, ...]:
    """
    `except` wins over `only`, so its entries become exclude rules placed
    first. With `except` alone, everything else is included.
    """
    rules: List[Rule] = []
    for entry in except_ or ():
        rules.extend(keyword_rules(entry, include=False))
    for entry in only or ():
        rules.extend(keyword_rules(entry, include=True))
    if except_ and not only:
        rules.append(Rule(include=True))
    return tuple(rules)


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

def rule_matches(rule: Rule, ctx: RunContext) -> bool:
    if rule.ref is not None and not ref_matches(rule.ref, ctx.ref_name):
        return False
    if rule.ref_kind is not None and RefKind(rule.ref_kind) is not ctx.ref_kind:
        return False
    if rule.source is not None and rule.source != ctx.source:
        return False
    return True


def admit(job: Job, ctx: RunContext) -> bool:
    """
    First matching rule decides. No rules at all -> admitted. Rules present
    but none matches -> excluded.
    """
    if not job.rules:
        return True
    for rule in job.rules:
        if rule_matches(rule, ctx):
            return rule.include
    return False


def admitted_jobs(model: PipelineModel, ctx: RunContext) -> Tuple[List[Job], List[str]]:
    """
    Returns (admitted jobs in manifest order, excluded job names).

    A job whose `needs` reference an excluded job can never start, so it is
    excluded too, transitively. This is exclusion, not cancellation.
    """
    excluded = {j.name for j in model.jobs if not admit(j, ctx)}

    changed = True
    while changed:
        changed = False
        for j in model.jobs:
            if j.name in excluded or not j.needs:
                continue
            if any(n in excluded for n in j.needs):
                logger.debug("job %s excluded: needs an excluded job", j.name)
                excluded.add(j.name)
                changed = True

    admitted = [j for j in model.jobs if j.name not in excluded]
    return admitted, [j.name for j in model.jobs if j.name in excluded]

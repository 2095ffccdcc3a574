"""
Trigger evaluation: decide whether an event activates a pipeline, and which
jobs become candidates for the run.
"""

import logging
import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Dict, Iterable, List, Optional, Pattern, Set

from controller.src.dsl.cron import CronExpression
from controller.src.models.definition import EventKind, PipelineDefinition, TriggerRule
from controller.src.models.run import RepositoryEvent

logger = logging.getLogger(__name__)

@lru_cache(maxsize=512)
def _compile_glob(pattern: str) -> Pattern:
    """
    Translate a branch/path glob to a regex.

    `**` crosses `/` boundaries, `*` and `?` do not.
    """
    out = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
            continue
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
            continue
        if char == "*":
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(char))
        i += 1
    return re.compile("".join(out) + r"\Z")

def match_glob(value: str, pattern: str) -> bool:
    return _compile_glob(pattern).match(value) is not None

def match_any(value: str, patterns: Iterable[str]) -> bool:
    return any(match_glob(value, p) for p in patterns)

def _branch_matches(rule: TriggerRule, branch: str) -> bool:
    if rule.branches and not match_any(branch, rule.branches):
        return False
    if rule.branches_ignore and match_any(branch, rule.branches_ignore):
        return False
    return True

def _paths_match(rule: TriggerRule, changed_paths: Optional[List[str]]) -> bool:
    # Path filters only apply to events that carry changed files
    if changed_paths is None:
        return True
    remaining = list(changed_paths)
    if rule.paths_ignore:
        remaining = [p for p in remaining if not match_any(p, rule.paths_ignore)]
        if not remaining:
            return False
    if rule.paths:
        return any(match_any(p, rule.paths) for p in remaining)
    return True

def _inputs_satisfied(rule: TriggerRule, inputs: Dict[str, str]) -> bool:
    for name, spec in rule.inputs.items():
        if spec.required and spec.default is None and name not in inputs:
            logger.info(f"Manual trigger missing required input '{name}'")
            return False
    return True

def rule_matches(rule: TriggerRule, event: RepositoryEvent, now: Optional[datetime] = None) -> bool:
    """A rule matches when its event kind equals the event's and every filter passes."""
    if rule.event != event.kind:
        return False

    if rule.event == EventKind.SCHEDULE:
        tick = event.cron_tick or now or datetime.now(timezone.utc)
        return CronExpression(rule.cron).matches(tick)

    if rule.event == EventKind.MANUAL and not _inputs_satisfied(rule, event.dispatch_inputs):
        return False

    if not _branch_matches(rule, event.branch):
        return False

    return _paths_match(rule, event.changed_paths)

def is_activated(definition: PipelineDefinition, event: RepositoryEvent, now: Optional[datetime] = None) -> bool:
    return any(rule_matches(rule, event, now) for rule in definition.triggers)

def evaluate(definition: PipelineDefinition, event: RepositoryEvent, now: Optional[datetime] = None) -> Set[str]:
    """
    Return the names of the jobs that are candidates for a run of `definition`
    triggered by `event`. Empty when no trigger rule matches.
    """
    if not is_activated(definition, event, now):
        logger.debug(f"Pipeline '{definition.name}' not activated by {event.kind.value} event")
        return set()

    candidates = set()
    for name, job in definition.jobs.items():
        if job.events is not None and event.kind not in job.events:
            logger.debug(f"Job '{name}' is not scoped to {event.kind.value} events")
            continue
        candidates.add(name)
    return candidates

def resolve_inputs(definition: PipelineDefinition, event: RepositoryEvent) -> Dict[str, str]:
    """Dispatch inputs merged over declared defaults."""
    inputs: Dict[str, str] = {}
    for rule in definition.triggers:
        if rule.event != event.kind:
            continue
        for name, spec in rule.inputs.items():
            if spec.default is not None:
                inputs.setdefault(name, spec.default)
    inputs.update(event.dispatch_inputs)
    return inputs

# triggers.py
from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence

from .errors import FlowError, InvalidInputError, MissingInputError
from .model import Event, EventKind, ResolvedContext, Trigger, WorkflowDefinition

DEFAULT_PULL_REQUEST_TYPES = ("opened", "synchronize", "reopened")


class Match(NamedTuple):
    workflow: WorkflowDefinition
    context: ResolvedContext


# ----------------------------------------------------------------------
# Filter patterns
# ----------------------------------------------------------------------

@lru_cache(maxsize=512)
def _pattern_regex(pattern: str) -> re.Pattern:
    """
    Translate a filter glob:
      **  any characters including '/'
      *   any characters except '/'
      ?   one character except '/'
    """
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out) + r"\Z")


def filter_matches(value: str, patterns: Sequence[str]) -> bool:
    """
    Evaluate patterns in order; a `!pattern` excludes what earlier ones
    included. The last matching pattern wins.
    """
    result = False
    for p in patterns:
        if p.startswith("!"):
            if _pattern_regex(p[1:]).match(value):
                result = False
        elif _pattern_regex(p).match(value):
            result = True
    return result


def _ref_allowed(name: str, include: Sequence[str], ignore: Sequence[str]) -> bool:
    if include:
        return filter_matches(name, include)
    if ignore:
        return not filter_matches(name, ignore)
    return True


def _paths_allowed(trigger: Trigger, event: Event) -> bool:
    changed = event.payload.get("changed_files")
    if changed is None or not (trigger.paths or trigger.paths_ignore):
        return True
    if trigger.paths:
        return any(filter_matches(f, trigger.paths) for f in changed)
    return not all(filter_matches(f, trigger.paths_ignore) for f in changed)


# ----------------------------------------------------------------------
# Per-kind matching
# ----------------------------------------------------------------------

def _push_matches(trigger: Trigger, event: Event) -> bool:
    name = event.ref_name
    if event.ref_type == "tag":
        if (trigger.branches or trigger.branches_ignore) and not (trigger.tags or trigger.tags_ignore):
            return False
        return _ref_allowed(name, trigger.tags, trigger.tags_ignore)

    if (trigger.tags or trigger.tags_ignore) and not (trigger.branches or trigger.branches_ignore):
        return False
    if not _ref_allowed(name, trigger.branches, trigger.branches_ignore):
        return False
    return _paths_allowed(trigger, event)


def _pull_request_matches(trigger: Trigger, event: Event) -> bool:
    action = event.payload.get("action")
    types = trigger.types or DEFAULT_PULL_REQUEST_TYPES
    if action is not None and action not in types:
        return False
    base = event.payload.get("base_ref") or event.ref_name
    if not _ref_allowed(base, trigger.branches, trigger.branches_ignore):
        return False
    return _paths_allowed(trigger, event)


def _schedule_matches(trigger: Trigger, event: Event) -> bool:
    cron = event.payload.get("schedule")
    return cron is None or cron in trigger.crons


def trigger_matches(trigger: Trigger, event: Event) -> bool:
    if trigger.kind is not event.kind:
        return False
    if event.kind is EventKind.PUSH:
        return _push_matches(trigger, event)
    if event.kind is EventKind.PULL_REQUEST:
        return _pull_request_matches(trigger, event)
    if event.kind is EventKind.SCHEDULE:
        return _schedule_matches(trigger, event)
    return True


# ----------------------------------------------------------------------
# Manual inputs
# ----------------------------------------------------------------------

def _coerce_input(workflow: str, spec, value: Any) -> Any:
    if spec.type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise InvalidInputError(workflow, spec.name, f"expected a boolean, got {value!r}")
    if spec.type == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        try:
            as_float = float(value)
        except (TypeError, ValueError):
            raise InvalidInputError(workflow, spec.name, f"expected a number, got {value!r}") from None
        return int(as_float) if as_float.is_integer() else as_float
    if spec.type == "choice":
        if str(value) not in spec.options:
            raise InvalidInputError(workflow, spec.name, f"{value!r} is not one of {list(spec.options)}")
        return str(value)
    return value if isinstance(value, str) else str(value)


def resolve_inputs(workflow: WorkflowDefinition, trigger: Trigger, provided: Dict[str, Any]) -> Dict[str, Any]:
    """
    Resolve declared inputs from the event's input mapping.

    Raises:
        MissingInputError: a required input is absent and has no default
        InvalidInputError: a value does not fit the declared type
    """
    resolved: Dict[str, Any] = {}
    for spec in trigger.inputs:
        if spec.name in provided and provided[spec.name] is not None:
            value = provided[spec.name]
        elif spec.default is not None:
            value = spec.default
        elif spec.required:
            raise MissingInputError(workflow.name, spec.name)
        else:
            continue
        resolved[spec.name] = _coerce_input(workflow.name, spec, value)
    return resolved


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def build_context(workflow: WorkflowDefinition, event: Event, inputs: Dict[str, Any]) -> ResolvedContext:
    payload = event.payload
    github = {
        "event_name": event.kind.value,
        "ref": event.ref,
        "ref_name": event.ref_name,
        "ref_type": event.ref_type,
        "sha": payload.get("sha", ""),
        "actor": payload.get("actor", ""),
        "repository": payload.get("repository", ""),
        "base_ref": payload.get("base_ref", ""),
        "head_ref": payload.get("head_ref", ""),
        "workflow": workflow.name,
        "event": dict(payload),
        "timestamp": event.timestamp.isoformat(),
    }
    return ResolvedContext(
        github=github,
        inputs=inputs,
        env=dict(workflow.env),
        vars=dict(payload.get("vars") or {}),
    )


def match_workflow(event: Event, workflow: WorkflowDefinition) -> Optional[ResolvedContext]:
    """Return the resolved context if `workflow` reacts to `event`, else None."""
    trigger = workflow.trigger(event.kind)
    if trigger is None or not trigger_matches(trigger, event):
        return None
    inputs: Dict[str, Any] = {}
    if event.kind is EventKind.MANUAL:
        inputs = resolve_inputs(workflow, trigger, dict(event.payload.get("inputs") or {}))
    return build_context(workflow, event, inputs)


def match(
    event: Event,
    workflows: Iterable[WorkflowDefinition],
    *,
    on_error: Optional[Callable[[WorkflowDefinition, FlowError], None]] = None,
) -> List[Match]:
    """
    Every (workflow, context) pair that should run for `event`.

    Input errors are local to one workflow: with `on_error` they are reported
    and the remaining workflows are still matched; without it they raise.
    """
    matches: List[Match] = []
    for wf in workflows:
        try:
            ctx = match_workflow(event, wf)
        except (MissingInputError, InvalidInputError) as e:
            if on_error is None:
                raise
            on_error(wf, e)
            continue
        if ctx is not None:
            matches.append(Match(wf, ctx))
    return matches

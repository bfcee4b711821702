# schedule.py
"""
Time-keeping collaborator for `schedule` triggers.

The trigger matcher never looks at the clock. Instead something calls
`scheduled_events(workflows, when)` once a minute (see `flowci tick`) and
dispatches the synthetic events it returns.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, List, Set, Tuple

from .model import Event, EventKind, WorkflowDefinition

ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

MONTHS = {m: i + 1 for i, m in enumerate(
    ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"])}
DAYS = {d: i for i, d in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}

# (low, high, names) per field: minute hour day-of-month month day-of-week
FIELDS = (
    (0, 59, {}),
    (0, 23, {}),
    (1, 31, {}),
    (1, 12, MONTHS),
    (0, 7, DAYS),
)


def _value(token: str, low: int, high: int, names: dict) -> int:
    t = token.lower()
    if t in names:
        return names[t]
    if not t.isdigit():
        raise ValueError(f"invalid cron value {token!r}")
    v = int(t)
    if not low <= v <= high:
        raise ValueError(f"cron value {v} out of range {low}-{high}")
    return v


def _parse_field(text: str, low: int, high: int, names: dict) -> Set[int]:
    out: Set[int] = set()
    for part in text.split(","):
        if not part:
            raise ValueError(f"empty element in cron field {text!r}")
        step = 1
        if "/" in part:
            part, step_s = part.split("/", 1)
            if not step_s.isdigit() or int(step_s) == 0:
                raise ValueError(f"invalid cron step {step_s!r}")
            step = int(step_s)
        if part == "*":
            start, end = low, high
        elif "-" in part:
            a, b = part.split("-", 1)
            start, end = _value(a, low, high, names), _value(b, low, high, names)
            if start > end:
                raise ValueError(f"invalid cron range {part!r}")
        else:
            start = _value(part, low, high, names)
            end = high if step != 1 else start
        out.update(range(start, end + 1, step))
    return out


def parse_cron(expr: str) -> Tuple[Set[int], Set[int], Set[int], Set[int], Set[int]]:
    """
    Parse a 5-field cron expression.

    Raises:
        ValueError: if the expression is malformed
    """
    text = ALIASES.get(expr.strip().lower(), expr.strip())
    parts = text.split()
    if len(parts) != 5:
        raise ValueError(f"cron expression needs 5 fields, got {len(parts)}: {expr!r}")
    minute, hour, dom, month, dow = (
        _parse_field(p, lo, hi, names) for p, (lo, hi, names) in zip(parts, FIELDS)
    )
    # 7 and 0 are both Sunday
    if 7 in dow:
        dow = (dow - {7}) | {0}
    return minute, hour, dom, month, dow


def cron_matches(expr: str, when: datetime) -> bool:
    minute, hour, dom, month, dow = parse_cron(expr)
    if when.minute not in minute or when.hour not in hour or when.month not in month:
        return False
    parts = ALIASES.get(expr.strip().lower(), expr.strip()).split()
    dom_restricted, dow_restricted = parts[2] != "*", parts[4] != "*"
    weekday = (when.weekday() + 1) % 7  # Monday=0 -> cron Monday=1
    day_ok = when.day in dom
    week_ok = weekday in dow
    if dom_restricted and dow_restricted:
        return day_ok or week_ok
    return day_ok and week_ok


def scheduled_events(
    workflows: Iterable[WorkflowDefinition],
    when: datetime | None = None,
    *,
    ref: str = "",
) -> List[Event]:
    """One synthetic schedule Event per distinct cron expression due at `when`."""
    when = when or datetime.now(timezone.utc)
    when = when.replace(second=0, microsecond=0)
    seen: List[str] = []
    for wf in workflows:
        trigger = wf.trigger(EventKind.SCHEDULE)
        if trigger is None:
            continue
        for cron in trigger.crons:
            if cron not in seen and cron_matches(cron, when):
                seen.append(cron)
    return [
        Event(kind=EventKind.SCHEDULE, ref=ref, payload={"schedule": cron}, timestamp=when)
        for cron in seen
    ]


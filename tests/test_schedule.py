from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import make_workflow, run_step
from flowci.model import EventKind
from flowci.schedule import cron_matches, parse_cron, scheduled_events


def at(y, mo, d, h, mi):
    return datetime(y, mo, d, h, mi, tzinfo=timezone.utc)


def test_parse_fields() -> None:
    minute, hour, dom, month, dow = parse_cron("*/15 9-17 1,15 jan-mar mon-fri")

    assert minute == {0, 15, 30, 45}
    assert hour == set(range(9, 18))
    assert dom == {1, 15}
    assert month == {1, 2, 3}
    assert dow == {1, 2, 3, 4, 5}


def test_sunday_as_seven() -> None:
    assert parse_cron("0 0 * * 7")[4] == {0}


@pytest.mark.parametrize("expr", ["* * * *", "60 * * * *", "* * * * 8", "*/0 * * * *", "5-1 * * * *", "x * * * *"])
def test_invalid(expr) -> None:
    with pytest.raises(ValueError):
        parse_cron(expr)


def test_cron_matches() -> None:
    # 2024-01-01 was a Monday
    assert cron_matches("30 9 * * mon", at(2024, 1, 1, 9, 30))
    assert not cron_matches("30 9 * * tue", at(2024, 1, 1, 9, 30))
    assert cron_matches("@daily", at(2024, 1, 2, 0, 0))


def test_day_fields_are_or_when_both_restricted() -> None:
    # 13th of the month OR a Friday
    assert cron_matches("0 0 13 * 5", at(2024, 1, 13, 0, 0))
    assert cron_matches("0 0 13 * 5", at(2024, 1, 5, 0, 0))
    assert not cron_matches("0 0 13 * 5", at(2024, 1, 6, 0, 0))


def test_scheduled_events_one_per_due_cron() -> None:
    nightly = make_workflow({"a": run_step("true")}, on={"schedule": [{"cron": "0 3 * * *"}]}, name="nightly")
    also = make_workflow({"a": run_step("true")}, on={"schedule": [{"cron": "0 3 * * *"}, {"cron": "0 4 * * *"}]})
    push_only = make_workflow({"a": run_step("true")})

    events = scheduled_events([nightly, also, push_only], at(2024, 1, 1, 3, 0))

    assert len(events) == 1
    assert events[0].kind is EventKind.SCHEDULE
    assert events[0].payload == {"schedule": "0 3 * * *"}
    assert scheduled_events([nightly], at(2024, 1, 1, 3, 1)) == []

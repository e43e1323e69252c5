from __future__ import annotations

import json
from datetime import date, datetime

from deskbook.availability import (
    available_timeslots,
    desk_covers,
    parse_availability,
    template_covers,
    union_timeslots,
)
from deskbook.models import ResourceRecord

MONDAY = date(2026, 10, 19)


def _desk(desk_id: str, availability) -> ResourceRecord:
    return ResourceRecord(resource_id=desk_id, type="Desk", name=desk_id, availability=availability)


def test_parse_accepts_json_and_display_form():
    raw = json.dumps({"Monday": ["08:00-08:30", "0830-0900"], "funday": ["0900-0930"]})
    assert parse_availability(raw) == {"monday": ["0800-0830", "0830-0900"]}


def test_parse_malformed_payload_degrades_to_empty():
    assert parse_availability("{not json") == {}
    assert parse_availability(["monday"]) == {}
    assert parse_availability({"monday": "0800-0830"}) == {}
    assert parse_availability({"monday": ["8am"]}) == {}
    assert parse_availability(None) == {}


def test_malformed_template_on_record_means_no_slots():
    desk = _desk("d1", "{broken")
    assert desk.availability == {}
    assert available_timeslots(desk, MONDAY, datetime(2026, 10, 19, 7, 0)) == []


def test_today_drops_started_and_short_slots():
    desk = _desk("d1", {"monday": ["1400-1430", "1430-1500", "1500-1530", "1530-1600"]})
    now = datetime(2026, 10, 19, 14, 31)
    assert available_timeslots(desk, MONDAY, now) == ["1500-1530", "1530-1600"]


def test_today_keeps_slot_that_ends_after_grace():
    desk = _desk("d1", {"monday": ["1430-1500"]})
    assert available_timeslots(desk, MONDAY, datetime(2026, 10, 19, 14, 20)) == ["1430-1500"]
    assert available_timeslots(desk, MONDAY, datetime(2026, 10, 19, 14, 30)) == ["1430-1500"]


def test_future_day_returns_whole_template_and_past_day_nothing():
    desk = _desk("d1", {"tuesday": ["0800-0830"], "sunday": ["0900-0930"]})
    now = datetime(2026, 10, 19, 23, 0)
    assert available_timeslots(desk, date(2026, 10, 20), now) == ["0800-0830"]
    assert available_timeslots(desk, date(2026, 10, 18), now) == []
    assert available_timeslots(desk, date(2026, 10, 21), now) == []


def test_union_is_sorted_and_deduplicated():
    desks = [
        _desk("d1", {"monday": ["0900-0930", "0800-0830"]}),
        _desk("d2", {"monday": ["0830-0900", "0800-0830"]}),
    ]
    slots = union_timeslots(desks, MONDAY, datetime(2026, 10, 19, 7, 0))
    assert slots == ["0800-0830", "0830-0900", "0900-0930"]


def test_desk_covers_requires_every_slot():
    desk = _desk("d1", {"monday": ["0800-0830", "0830-0900"]})
    now = datetime(2026, 10, 19, 7, 0)
    assert desk_covers(desk, MONDAY, ["0800-0830", "0830-0900"], now)
    assert not desk_covers(desk, MONDAY, ["0830-0900", "0900-0930"], now)
    assert template_covers(desk, MONDAY, ["0830-0900"])

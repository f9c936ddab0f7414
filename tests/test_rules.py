from __future__ import annotations

from types import SimpleNamespace

import pytest

from huddle.rules import (
    APPLY,
    REJECT,
    WAITLIST,
    decide_rsvp_action,
    normalize_rsvp_status,
    seats_left,
)


def _event(**overrides):
    values = {"status": "active", "max_capacity": None, "waitlist_enabled": False}
    values.update(overrides)
    return SimpleNamespace(**values)


def test_unlimited_capacity_always_applies():
    event = _event()
    for going in (0, 10, 10_000):
        assert decide_rsvp_action(event, "going", None, going).action == APPLY


def test_full_event_without_waitlist_rejects():
    decision = decide_rsvp_action(_event(max_capacity=3), "going", None, 3)
    assert decision.action == REJECT
    assert decision.reason == "full"
    assert not decision.applies


def test_full_event_with_waitlist_waitlists():
    event = _event(max_capacity=2, waitlist_enabled=True)
    decision = decide_rsvp_action(event, "going", "maybe", 2)
    assert decision.action == WAITLIST


def test_seat_available_applies():
    assert decide_rsvp_action(_event(max_capacity=2), "going", None, 1).applies


def test_existing_going_rsvp_is_kept_when_full():
    decision = decide_rsvp_action(_event(max_capacity=2), "going", "going", 2)
    assert decision.action == APPLY


@pytest.mark.parametrize("status", ["maybe", "not_going"])
def test_non_going_answers_ignore_capacity(status):
    assert decide_rsvp_action(_event(max_capacity=1), status, None, 1).applies


@pytest.mark.parametrize("status", ["cancelled", "live", "pending", "draft"])
def test_closed_event_rejects_every_answer(status):
    event = _event(status=status)
    for desired in ("going", "maybe", "not_going"):
        decision = decide_rsvp_action(event, desired, None, 0)
        assert decision.action == REJECT
        assert decision.reason == "closed"


def test_legacy_event_without_status_accepts():
    assert decide_rsvp_action(_event(status=None), "going", None, 0).applies


def test_normalize_rsvp_status():
    assert normalize_rsvp_status("Going") == "going"
    assert normalize_rsvp_status("not-going") == "not_going"
    assert normalize_rsvp_status("not going") == "not_going"
    with pytest.raises(ValueError):
        normalize_rsvp_status("yes")


def test_seats_left():
    assert seats_left(_event(), 5) is None
    assert seats_left(_event(max_capacity=5), 3) == 2
    assert seats_left(_event(max_capacity=5), 7) == 0

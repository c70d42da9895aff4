import pytest

from services.plans import TransitionDecision, allotment, get_credit_pack, resolve_transition


@pytest.mark.parametrize(
    "from_plan,from_interval,to_plan,to_interval,expected",
    [
        ("free", None, "pro", "month", TransitionDecision(500, "immediate")),
        ("free", None, "pro", "year", TransitionDecision(6000, "immediate")),
        ("free", None, "proplus", "month", TransitionDecision(900, "immediate")),
        ("pro", "month", "proplus", "month", TransitionDecision(900, "immediate")),
        ("pro", "month", "proplus", "year", TransitionDecision(10800, "immediate")),
        ("pro", "year", "proplus", "month", TransitionDecision(900, "immediate")),
        ("pro", "month", "pro", "year", TransitionDecision(6000, "immediate")),
        ("pro", "month", "pro", "month", TransitionDecision(0, "immediate")),
        ("proplus", "month", "pro", "month", TransitionDecision(500, "scheduled")),
        ("proplus", "year", "pro", "year", TransitionDecision(6000, "scheduled")),
        ("pro", "year", "pro", "month", TransitionDecision(500, "scheduled")),
        ("proplus", "year", "pro", "month", TransitionDecision(500, "scheduled")),
        ("pro", "year", "free", None, TransitionDecision(0, "immediate")),
        ("proplus", "month", "free", None, TransitionDecision(0, "immediate")),
    ],
)
def test_plan_change_matrix(from_plan, from_interval, to_plan, to_interval, expected):
    assert resolve_transition(from_plan, from_interval, to_plan, to_interval, "change") == expected


@pytest.mark.parametrize(
    "plan,interval,expected",
    [
        ("pro", "month", 500),
        ("pro", "year", 6000),
        ("proplus", "month", 900),
        ("proplus", "year", 10800),
        ("free", None, 0),
    ],
)
def test_renewal_grants_current_allotment(plan, interval, expected):
    assert resolve_transition(plan, interval, plan, interval, "renewal") == TransitionDecision(expected, "immediate")


def test_cancellation_and_reactivation_grant_nothing():
    assert resolve_transition("pro", "year", "free", None, "cancellation") == TransitionDecision(0, "immediate")
    assert resolve_transition("pro", "month", "pro", "month", "reactivation") == TransitionDecision(0, "immediate")


def test_interval_aliases_and_catalog():
    assert allotment("pro", "yearly") == 6000
    assert allotment("proplus", "monthly") == 900
    assert get_credit_pack("pack-5000").credits == 5000


def test_unknown_inputs_are_rejected():
    with pytest.raises(ValueError):
        resolve_transition("pro", "month", "enterprise", "month", "change")
    with pytest.raises(ValueError):
        resolve_transition("pro", "month", "pro", "week", "change")
    with pytest.raises(ValueError):
        resolve_transition("pro", "month", "pro", "month", "refund")
    with pytest.raises(ValueError):
        get_credit_pack("pack-3")

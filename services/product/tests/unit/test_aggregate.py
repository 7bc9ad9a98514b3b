import pytest

from services.product.app.aggregate import (
    COMPLETED,
    FAILED,
    PENDING,
    OrderAggregate,
    check_transition,
)
from services.product.app.errors import InvalidTransition


@pytest.mark.parametrize("new", [COMPLETED, FAILED])
def test_pending_moves_forward_to_terminal(new):
    assert check_transition(PENDING, new) is True


@pytest.mark.parametrize("status", [COMPLETED, FAILED])
def test_reapplying_terminal_status_is_noop(status):
    assert check_transition(status, status) is False


@pytest.mark.parametrize(
    "current,new",
    [
        (COMPLETED, PENDING),
        (FAILED, PENDING),
        (COMPLETED, FAILED),
        (FAILED, COMPLETED),
        (PENDING, PENDING),
    ],
)
def test_backward_or_cross_transitions_are_rejected(current, new):
    with pytest.raises(InvalidTransition):
        check_transition(current, new)


def test_new_aggregate_is_pending_and_not_terminal():
    agg = OrderAggregate()
    assert agg.status == PENDING
    assert not agg.is_terminal
    agg.status = FAILED
    assert agg.is_terminal

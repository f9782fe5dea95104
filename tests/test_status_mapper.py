"""
Courier status mapping and the forward-only transition guard.
"""
import logging

import pytest

from app.models import OrderStatus
from app.services.order_reconciler import can_transition
from app.services.status_mapper import MappedStatus, map_status


@pytest.mark.parametrize("raw, expected", [
    ("Delivered", OrderStatus.DELIVERED),
    ("DELIVERED", OrderStatus.DELIVERED),
    ("Cancelled", OrderStatus.CANCELLED),
    ("Shipment cancelled in transit", OrderStatus.CANCELLED),
    ("Undelivered", OrderStatus.SHIPPED),
    ("Not Delivered", OrderStatus.SHIPPED),
    ("Out For Delivery", OrderStatus.SHIPPED),
    ("In Transit", OrderStatus.SHIPPED),
    ("IN_TRANSIT", OrderStatus.SHIPPED),
    ("Pickup Scheduled", OrderStatus.SHIPPED),
    ("Picked Up", OrderStatus.SHIPPED),
    ("Reached at Destination Hub", OrderStatus.SHIPPED),
    ("Manifested", OrderStatus.PROCESSING),
    ("AWB Assigned", OrderStatus.PROCESSING),
    ("NEW", OrderStatus.PROCESSING),
    ("Lost", OrderStatus.FAILED),
    ("Damaged", OrderStatus.FAILED),
])
def test_known_statuses(raw, expected):
    mapping = map_status("shiprocket", raw)
    assert mapping.canonical == expected
    assert mapping.order_status == expected
    assert mapping.rto is False


@pytest.mark.parametrize("raw", ["RTO Delivered", "RTO_INITIATED", "Returned to origin", "RTO In Transit"])
def test_rto_is_annotation_only(raw):
    mapping = map_status("shiprocket", raw)
    assert mapping.rto is True
    assert mapping.canonical == MappedStatus.UNKNOWN
    assert mapping.order_status is None
    assert mapping.is_known


def test_unknown_status_is_logged(caplog):
    caplog.set_level(logging.WARNING)
    mapping = map_status("shiprocket", "Customs Hold")
    assert mapping.canonical == MappedStatus.UNKNOWN
    assert not mapping.is_known
    assert "Customs Hold" in caplog.text


@pytest.mark.parametrize("raw", [None, "", "   ", 42])
def test_map_status_is_total(raw):
    assert map_status("shiprocket", raw).canonical == MappedStatus.UNKNOWN


def test_provider_specific_patterns():
    assert map_status("delhivery", "Pending").canonical == OrderStatus.SHIPPED
    assert map_status("shiprocket", "Pending").canonical == MappedStatus.UNKNOWN
    assert map_status("delhivery", "Manifested").canonical == OrderStatus.PROCESSING


class TestCanTransition:
    def test_forward_moves(self):
        assert can_transition(OrderStatus.PENDING, OrderStatus.CONFIRMED)
        assert can_transition(OrderStatus.CONFIRMED, OrderStatus.SHIPPED)
        assert can_transition(OrderStatus.SHIPPED, OrderStatus.DELIVERED)

    def test_backward_and_same_refused(self):
        assert not can_transition(OrderStatus.SHIPPED, OrderStatus.PROCESSING)
        assert not can_transition(OrderStatus.SHIPPED, OrderStatus.SHIPPED)
        assert not can_transition(OrderStatus.PROCESSING, OrderStatus.PENDING)

    def test_absorbing_reachable_from_non_terminal(self):
        for status in (OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.SHIPPED):
            assert can_transition(status, OrderStatus.CANCELLED)
            assert can_transition(status, OrderStatus.FAILED)
            assert can_transition(status, OrderStatus.REFUNDED)

    def test_terminal_statuses_never_move(self):
        for terminal in (OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.FAILED, OrderStatus.REFUNDED):
            for target in OrderStatus:
                assert not can_transition(terminal, target)

    def test_unknown_target_and_missing_current(self):
        assert not can_transition(OrderStatus.PENDING, None)
        assert can_transition(None, OrderStatus.SHIPPED)

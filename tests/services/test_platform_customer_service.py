"""Tests for platform customer upserts and VIP detection."""

import pytest

from helpdesk.services.platform_customer_service import (
    determine_vip_status,
    get_platform_customer,
    upsert_platform_customer,
)


@pytest.mark.parametrize(
    "value_cents,threshold,expected",
    [
        (50000, 500, True),
        (49999, 500, False),
        (None, 500, False),
        (50000, None, False),
    ],
)
def test_determine_vip_status(value_cents, threshold, expected):
    assert determine_vip_status(value_cents, threshold) is expected


def test_upsert_creates_then_updates(db_session):
    upsert_platform_customer(
        db_session,
        "jane@example.com",
        {"name": "Jane", "value": "12.5", "links": {"CRM": "https://crm/1"}, "plan": "gold"},
    )
    upsert_platform_customer(db_session, "jane@example.com", {"value": "not a number"})

    customer = get_platform_customer(db_session, "jane@example.com")
    assert customer.name == "Jane"
    assert customer.value == 1250
    assert customer.links == {"CRM": "https://crm/1"}
    assert customer.customer_metadata == {"plan": "gold"}

"""Platform customer lookups and VIP status."""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from helpdesk.db.models import PlatformCustomer

logger = logging.getLogger(__name__)


def get_platform_customer(db: Session, email: str) -> PlatformCustomer | None:
    return db.scalars(
        select(PlatformCustomer).where(PlatformCustomer.email == email)
    ).first()


def determine_vip_status(value_cents: int | None, vip_threshold: int | None) -> bool:
    """Return True when the customer's value reaches the mailbox VIP threshold.

    Args:
        value_cents: Customer value in integer cents.
        vip_threshold: Threshold in dollars, None when VIP detection is off.
    """
    if vip_threshold is None or value_cents is None:
        return False
    return value_cents / 100 >= vip_threshold


def upsert_platform_customer(
    db: Session,
    email: str,
    metadata: dict[str, Any],
) -> PlatformCustomer:
    """Create or refresh a customer from metadata API fields.

    Recognized keys are 'name', 'value' (dollars) and 'links'; everything
    else is kept verbatim in customer_metadata.

    Args:
        db: Database session.
        email: Customer email.
        metadata: Metadata object returned by the customer metadata API.

    Returns:
        The created or updated PlatformCustomer.
    """
    customer = get_platform_customer(db, email)
    if customer is None:
        customer = PlatformCustomer(email=email)
        db.add(customer)

    if metadata.get("name"):
        customer.name = str(metadata["name"])
    if metadata.get("value") is not None:
        try:
            customer.value = round(float(metadata["value"]) * 100)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric customer value for %s", email)
    if isinstance(metadata.get("links"), dict):
        customer.links = metadata["links"]
    extra = {
        k: v for k, v in metadata.items() if k not in ("name", "value", "links")
    }
    if extra:
        customer.customer_metadata = extra

    db.commit()
    return customer

"""
Delivery Service — Partner allocation

Reading the AVAILABLE partners and then marking one BUSY is a race when
several workers (or several service instances) assign at once. The
reservation is therefore a compare-and-swap on the status column:

    UPDATE delivery_partners SET status = 'BUSY'
     WHERE id = :id AND status = 'AVAILABLE'

A row count of 0 means another worker took that partner first; move on to
the next candidate. Candidates are tried in ascending id order.
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.errors import ResourceExhaustedError

from .schema import PartnerStatus, delivery_partners

logger = logging.getLogger(__name__)

NO_PARTNERS = "No available delivery partners found"


async def available_partner_ids(session: AsyncSession, exclude_id: int | None = None) -> list[int]:
    stmt = (
        select(delivery_partners.c.id)
        .where(delivery_partners.c.status == PartnerStatus.AVAILABLE.value)
        .order_by(delivery_partners.c.id)
    )
    if exclude_id is not None:
        stmt = stmt.where(delivery_partners.c.id != exclude_id)
    result = await session.execute(stmt)
    return [row.id for row in result.fetchall()]


async def try_reserve(session: AsyncSession, partner_id: int) -> bool:
    result = await session.execute(
        update(delivery_partners)
        .where(
            delivery_partners.c.id == partner_id,
            delivery_partners.c.status == PartnerStatus.AVAILABLE.value,
        )
        .values(status=PartnerStatus.BUSY.value)
    )
    return result.rowcount == 1


async def reserve_partner(session: AsyncSession, exclude_id: int | None = None) -> int:
    """
    Reserve the first free partner and return its id.

    The caller owns the transaction: the reservation only sticks once it
    commits. Raises ResourceExhaustedError when every candidate is taken.
    """
    for partner_id in await available_partner_ids(session, exclude_id):
        if await try_reserve(session, partner_id):
            logger.info("Reserved delivery partner %s", partner_id)
            return partner_id
        logger.debug("Partner %s taken by a concurrent assignment", partner_id)
    raise ResourceExhaustedError(NO_PARTNERS)


async def release_partner(session: AsyncSession, partner_id: int) -> None:
    await session.execute(
        update(delivery_partners)
        .where(
            delivery_partners.c.id == partner_id,
            delivery_partners.c.status == PartnerStatus.BUSY.value,
        )
        .values(status=PartnerStatus.AVAILABLE.value)
    )

"""Delivery Service — Query handlers (read side)."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import deliveries, delivery_partners


def _iso(value):
    return value.isoformat() if value else None


def _delivery(row) -> dict:
    return {
        "id": row.id,
        "order_id": row.order_id,
        "delivery_partner_id": row.delivery_partner_id,
        "restaurant_id": row.restaurant_id,
        "user_id": row.user_id,
        "pickup_address": row.pickup_address,
        "delivery_address": row.delivery_address,
        "notes": row.notes,
        "status": row.status,
        "assigned_at": _iso(row.assigned_at),
        "picked_up_at": _iso(row.picked_up_at),
        "delivered_at": _iso(row.delivered_at),
        "estimated_delivery_time": _iso(row.estimated_delivery_time),
    }


def _partner(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "phone": row.phone,
        "vehicle_type": row.vehicle_type,
        "vehicle_number": row.vehicle_number,
        "status": row.status,
        "rating": row.rating,
        "total_deliveries": row.total_deliveries,
    }


async def get_delivery(session: AsyncSession, delivery_id: int) -> dict | None:
    result = await session.execute(select(deliveries).where(deliveries.c.id == delivery_id))
    row = result.fetchone()
    return _delivery(row) if row else None


async def get_delivery_by_order(session: AsyncSession, order_id: int) -> dict | None:
    result = await session.execute(select(deliveries).where(deliveries.c.order_id == order_id))
    row = result.fetchone()
    return _delivery(row) if row else None


async def list_partner_deliveries(session: AsyncSession, partner_id: int) -> list[dict]:
    result = await session.execute(
        select(deliveries)
        .where(deliveries.c.delivery_partner_id == partner_id)
        .order_by(deliveries.c.id)
    )
    return [_delivery(row) for row in result.fetchall()]


async def get_partner(session: AsyncSession, partner_id: int) -> dict | None:
    result = await session.execute(
        select(delivery_partners).where(delivery_partners.c.id == partner_id)
    )
    row = result.fetchone()
    return _partner(row) if row else None


async def list_partners(session: AsyncSession, status: str | None = None) -> list[dict]:
    stmt = select(delivery_partners).order_by(delivery_partners.c.id)
    if status:
        stmt = stmt.where(delivery_partners.c.status == status)
    result = await session.execute(stmt)
    return [_partner(row) for row in result.fetchall()]

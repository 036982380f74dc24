"""
Order Service — Query handlers (read side)

Reads return plain dicts shaped for the HTTP layer.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import order_items, orders


def _iso(value):
    return value.isoformat() if value else None


def _to_dict(row, items: list) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "restaurant_id": row.restaurant_id,
        "delivery_partner_id": row.delivery_partner_id,
        "address_id": row.address_id,
        "special_instructions": row.special_instructions,
        "items": [
            {
                "id": item.id,
                "menu_item_id": item.menu_item_id,
                "item_name": item.item_name,
                "quantity": item.quantity,
                "price": item.price,
                "subtotal": item.subtotal,
            }
            for item in items
        ],
        "total_amount": row.total_amount,
        "delivery_fee": row.delivery_fee,
        "discount": row.discount,
        "final_amount": row.final_amount,
        "status": row.status,
        "payment_status": row.payment_status,
        "order_time": _iso(row.order_time),
        "delivery_time": _iso(row.delivery_time),
    }


async def _with_items(session: AsyncSession, rows) -> list[dict]:
    if not rows:
        return []
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_([row.id for row in rows]))
        .order_by(order_items.c.id)
    )
    by_order: dict[int, list] = {}
    for item in result.fetchall():
        by_order.setdefault(item.order_id, []).append(item)
    return [_to_dict(row, by_order.get(row.id, [])) for row in rows]


async def get_order(session: AsyncSession, order_id: int) -> dict | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    return (await _with_items(session, [row]))[0]


async def list_orders(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(orders).order_by(orders.c.order_time.desc(), orders.c.id.desc()))
    return await _with_items(session, result.fetchall())


async def list_user_orders(session: AsyncSession, user_id: int) -> list[dict]:
    """A user's order history, newest first."""
    result = await session.execute(
        select(orders)
        .where(orders.c.user_id == user_id)
        .order_by(orders.c.order_time.desc(), orders.c.id.desc())
    )
    return await _with_items(session, result.fetchall())

"""Payment Service — Query handlers (read side)."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import payments


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "order_id": row.order_id,
        "user_id": row.user_id,
        "amount": row.amount,
        "payment_method": row.payment_method,
        "status": row.status,
        "transaction_id": row.transaction_id,
        "gateway_response": row.gateway_response,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "completed_at": row.completed_at.isoformat() if row.completed_at else None,
    }


async def get_payment_by_order(session: AsyncSession, order_id: int) -> dict | None:
    result = await session.execute(select(payments).where(payments.c.order_id == order_id))
    row = result.fetchone()
    return _to_dict(row) if row else None


async def list_user_payments(session: AsyncSession, user_id: int) -> list[dict]:
    result = await session.execute(
        select(payments).where(payments.c.user_id == user_id).order_by(payments.c.id)
    )
    return [_to_dict(row) for row in result.fetchall()]

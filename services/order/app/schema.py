"""Order Service — tables."""

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
)

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("restaurant_id", Integer, nullable=False),
    Column("delivery_partner_id", Integer, nullable=True),
    Column("address_id", Integer, nullable=True),
    Column("special_instructions", String(500), nullable=True),
    Column("total_amount", Float, nullable=False),
    Column("delivery_fee", Float, nullable=False, default=0.0),
    Column("discount", Float, nullable=False, default=0.0),
    Column("final_amount", Float, nullable=False),
    Column("status", String(20), nullable=False),
    Column("payment_status", String(20), nullable=False),
    Column("order_time", DateTime(timezone=True), nullable=False),
    Column("delivery_time", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False, index=True),
    Column("menu_item_id", Integer, nullable=False),
    Column("item_name", String(200), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price", Float, nullable=False),
    Column("subtotal", Float, nullable=False),
)

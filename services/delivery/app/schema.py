"""Delivery Service — tables."""

from enum import Enum

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


class DeliveryStatus(str, Enum):
    ASSIGNED = "ASSIGNED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL = {DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED}


class PartnerStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BUSY = "BUSY"
    OFFLINE = "OFFLINE"


class VehicleType(str, Enum):
    BIKE = "BIKE"
    SCOOTER = "SCOOTER"
    CAR = "CAR"


metadata = MetaData()

delivery_partners = Table(
    "delivery_partners",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("phone", String(20), nullable=False, unique=True),
    Column("vehicle_type", String(20), nullable=False),
    Column("vehicle_number", String(20), nullable=True),
    Column("status", String(20), nullable=False, index=True),
    Column("rating", Float, nullable=False, default=5.0),
    Column("total_deliveries", Integer, nullable=False, default=0),
)

deliveries = Table(
    "deliveries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, nullable=False, unique=True),
    Column("delivery_partner_id", Integer, ForeignKey("delivery_partners.id"), nullable=False),
    Column("restaurant_id", Integer, nullable=True),
    Column("user_id", Integer, nullable=True),
    Column("pickup_address", String(255), nullable=True),
    Column("delivery_address", String(255), nullable=True),
    Column("notes", String(500), nullable=True),
    Column("status", String(20), nullable=False),
    Column("assigned_at", DateTime(timezone=True), nullable=False),
    Column("picked_up_at", DateTime(timezone=True), nullable=True),
    Column("delivered_at", DateTime(timezone=True), nullable=True),
    Column("estimated_delivery_time", DateTime(timezone=True), nullable=True),
)

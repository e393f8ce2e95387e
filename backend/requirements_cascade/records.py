"""
Plain records returned by the store accessor.

Engines work on these detached dataclasses rather than on live ORM rows, so a
session never outlives a single store call.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional


class OrderItemStatus(str, Enum):
    CREATED = "Created"
    IN_PROGRESS = "In Progress"
    READY = "Ready"
    DELIVERED = "Delivered"


LIVE_ORDER_STATUSES = (OrderItemStatus.CREATED.value, OrderItemStatus.IN_PROGRESS.value)


class OrderStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"


class OrderPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@dataclass
class OrderItemRecord:
    id: str
    product_config_id: str
    quantity: float
    status: str
    updated_at: Optional[datetime] = None
    fulfilled_quantity: float = 0.0

    @property
    def remaining_quantity(self) -> float:
        return self.quantity - (self.fulfilled_quantity or 0)


@dataclass
class FinishedGoodRecord:
    id: str
    product_config_id: str
    current_stock: float = 0.0
    in_manufacturing: float = 0.0
    threshold: float = 0.0
    required_quantity: float = 0.0
    product_code: Optional[str] = None
    last_updated: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class RawMaterialRecord:
    id: str
    name: str
    current_stock: float = 0.0
    in_procurement: float = 0.0
    minimum_stock: float = 0.0
    required: float = 0.0
    in_manufacturing: float = 0.0
    type: Optional[str] = None
    unit: Optional[str] = None
    last_updated: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class BOMEntryRecord:
    product_config_id: str
    raw_material_id: str
    quantity_required: float
    unit: Optional[str] = None


@dataclass
class ManufacturingOrderRecord:
    id: str
    order_number: str
    quantity_required: float
    product_config_id: Optional[str] = None
    product_name: Optional[str] = None
    priority: str = OrderPriority.MEDIUM.value
    status: str = OrderStatus.PENDING.value
    due_date: Optional[date] = None
    special_instructions: Optional[str] = None
    parent_order_id: Optional[str] = None
    rework_source_step_id: Optional[str] = None
    rework_quantity: Optional[float] = None
    rework_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_rework(self) -> bool:
        return self.parent_order_id is not None


@dataclass
class StepInstanceRecord:
    id: str
    order_id: str
    step_name: str
    instance_number: int
    parent_instance_id: Optional[str] = None
    origin_step_id: Optional[str] = None
    is_rework: bool = False
    status: str = "in_progress"
    quantity_assigned: Optional[float] = None
    quantity_received: Optional[float] = None
    weight_assigned: Optional[float] = None
    weight_received: Optional[float] = None
    assigned_worker: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class NewManufacturingOrder:
    """Insert payload for a manufacturing order; order_number is filled by the allocator."""
    quantity_required: float
    product_config_id: Optional[str] = None
    product_name: Optional[str] = None
    priority: str = OrderPriority.MEDIUM.value
    status: str = OrderStatus.PENDING.value
    due_date: Optional[date] = None
    special_instructions: Optional[str] = None
    parent_order_id: Optional[str] = None
    rework_source_step_id: Optional[str] = None
    rework_quantity: Optional[float] = None
    rework_reason: Optional[str] = None

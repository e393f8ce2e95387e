"""
════════════════════════════════════════════════════════════════════════════════
REQUIREMENTS CASCADE SCHEMAS - Pydantic models for the HTTP surface
════════════════════════════════════════════════════════════════════════════════
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from requirements_cascade.records import OrderPriority, OrderStatus


# ═══════════════════════════════════════════════════════════════════════════════
# INVENTORY
# ═══════════════════════════════════════════════════════════════════════════════

class RawMaterialPositionRead(BaseModel):
    id: str
    name: str
    type: Optional[str] = None
    unit: Optional[str] = None
    current_stock: float
    in_procurement: float
    minimum_stock: float
    required: float
    last_updated: Optional[datetime] = None
    shortfall: float = Field(..., ge=0, description="max(0, net_position)")
    net_position: float = Field(..., description="Negative means surplus")


class FinishedGoodPositionRead(BaseModel):
    id: str
    product_config_id: str
    product_code: Optional[str] = None
    current_stock: float
    in_manufacturing: float
    threshold: float
    required_quantity: float
    last_updated: Optional[datetime] = None
    shortfall: float = Field(..., ge=0)
    net_position: float


class InventoryResponse(BaseModel):
    materials: List[RawMaterialPositionRead]
    recalculated: bool
    reasons: List[str] = []


class MaterialRequirementRead(BaseModel):
    required: float
    shortfall: float


class RecalculationResponse(BaseModel):
    tenant: str
    calculated_at: datetime
    finished_goods_processed: int
    materials_updated: int
    requirements: Dict[str, MaterialRequirementRead]


class CacheStatusResponse(BaseModel):
    should_recalculate: bool
    reasons: List[str]
    orders_fingerprint: str
    stock_fingerprint: str


# ═══════════════════════════════════════════════════════════════════════════════
# MANUFACTURING ORDERS
# ═══════════════════════════════════════════════════════════════════════════════

class ManufacturingOrderCreate(BaseModel):
    quantity_required: float = Field(..., gt=0, description="Quantidade a produzir")
    product_config_id: Optional[str] = None
    product_name: Optional[str] = None
    priority: OrderPriority = OrderPriority.MEDIUM
    status: OrderStatus = OrderStatus.PENDING
    due_date: Optional[date] = None
    special_instructions: Optional[str] = None

    class Config:
        use_enum_values = True


class ReworkOrderCreate(BaseModel):
    parent_order_id: str
    source_step_id: str = Field(..., description="Step instance the rework originates from")
    rework_quantity: float = Field(..., gt=0)
    rework_reason: Optional[str] = None
    priority: Optional[OrderPriority] = None
    due_date: Optional[date] = None
    special_instructions: Optional[str] = None

    class Config:
        use_enum_values = True


class ManufacturingOrderRead(BaseModel):
    id: str
    order_number: str
    quantity_required: float
    product_config_id: Optional[str] = None
    product_name: Optional[str] = None
    priority: str
    status: str
    due_date: Optional[date] = None
    special_instructions: Optional[str] = None
    parent_order_id: Optional[str] = None
    rework_source_step_id: Optional[str] = None
    rework_quantity: Optional[float] = None
    rework_reason: Optional[str] = None
    is_rework: bool = False
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ═══════════════════════════════════════════════════════════════════════════════
# STEPS & LINEAGE
# ═══════════════════════════════════════════════════════════════════════════════

class StepInstanceCreate(BaseModel):
    order_id: str
    step_name: str
    parent_instance_id: Optional[str] = None
    origin_step_id: Optional[str] = None
    is_rework: bool = False
    status: str = "in_progress"
    quantity_assigned: Optional[float] = Field(None, ge=0)
    weight_assigned: Optional[float] = Field(None, ge=0)
    assigned_worker: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("step_name")
    @classmethod
    def step_name_not_blank(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("step_name must not be empty")
        return v


class StepInstanceRead(BaseModel):
    id: str
    order_id: str
    step_name: str
    instance_number: int
    parent_instance_id: Optional[str] = None
    origin_step_id: Optional[str] = None
    is_rework: bool
    status: str
    quantity_assigned: Optional[float] = None
    quantity_received: Optional[float] = None
    weight_assigned: Optional[float] = None
    weight_received: Optional[float] = None
    assigned_worker: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RemainingResponse(BaseModel):
    parent_instance_id: str
    quantity: float
    weight: float


class ProgressionEdgeRead(BaseModel):
    order_id: str
    from_instance_id: str
    to_instance_id: str
    from_step: str
    to_step: str
    explicit: bool


class ReworkEdgeRead(BaseModel):
    from_instance_id: str
    origin_order_id: str
    rework_order_id: str
    rework_order_number: str


class LineageResponse(BaseModel):
    order_id: str
    progression: List[ProgressionEdgeRead]
    rework: List[ReworkEdgeRead]

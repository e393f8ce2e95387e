"""
Requirements planning service.

Composes the store, cascade, change-detection cache, order number allocator
and lineage tracker into the operations the host application calls. The
tenant is always an explicit argument.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

from requirements_cascade.cascade import (
    CascadeResult,
    RequirementsCascadeEngine,
    finished_good_net_position,
    raw_material_net_position,
)
from requirements_cascade.change_detection import ChangeDetectionCache
from requirements_cascade.errors import InvalidRequest, InvalidReworkRequest, RecordNotFound
from requirements_cascade.lineage import LineageEdges, NewStepInstance, StepLineageTracker
from requirements_cascade.order_numbers import OrderNumberAllocator, OrderNumberKind
from requirements_cascade.records import (
    FinishedGoodRecord,
    ManufacturingOrderRecord,
    NewManufacturingOrder,
    OrderPriority,
    RawMaterialRecord,
    StepInstanceRecord,
)
from requirements_cascade.store import TenantStore

logger = logging.getLogger(__name__)


@dataclass
class RawMaterialPosition:
    material: RawMaterialRecord
    shortfall: float
    net_position: float

    @classmethod
    def from_record(cls, material: RawMaterialRecord) -> "RawMaterialPosition":
        net = raw_material_net_position(
            material.required, material.minimum_stock, material.current_stock, material.in_procurement
        )
        return cls(material=material, shortfall=max(0.0, net), net_position=net)


@dataclass
class FinishedGoodPosition:
    good: FinishedGoodRecord
    shortfall: float
    net_position: float

    @classmethod
    def from_record(cls, good: FinishedGoodRecord) -> "FinishedGoodPosition":
        net = finished_good_net_position(
            good.required_quantity, good.threshold, good.current_stock, good.in_manufacturing
        )
        return cls(good=good, shortfall=max(0.0, net), net_position=net)


@dataclass
class InventorySnapshot:
    """Raw materials with read-time shortfall, plus whether the cascade ran."""
    materials: List[RawMaterialPosition]
    recalculated: bool
    reasons: List[str] = field(default_factory=list)


class RequirementsPlanningService:
    def __init__(
        self,
        store: Optional[TenantStore] = None,
        cascade: Optional[RequirementsCascadeEngine] = None,
        cache: Optional[ChangeDetectionCache] = None,
        allocator: Optional[OrderNumberAllocator] = None,
        tracker: Optional[StepLineageTracker] = None,
    ):
        self.store = store or TenantStore()
        self.cascade = cascade or RequirementsCascadeEngine(self.store)
        self.cache = cache or ChangeDetectionCache(self.store)
        self.allocator = allocator or OrderNumberAllocator(self.store)
        self.tracker = tracker or StepLineageTracker(self.store)

    def resolve_tenant(self, user_id: str) -> str:
        return self.store.resolve_tenant(user_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Cascade
    # ─────────────────────────────────────────────────────────────────────────

    def recalculate(self, tenant: str) -> CascadeResult:
        return self.cascade.recalculate(tenant)

    def get_raw_materials_with_smart_caching(self, tenant: str) -> InventorySnapshot:
        """
        Read raw materials, recalculating first only when the cache says so.

        Metadata is refreshed only after a successful recalculation, so a
        failed run is retried on the next read.
        """
        decision = self.cache.check(tenant)
        if decision.should_recalculate:
            self.cascade.recalculate(tenant)
            self.cache.update_cache_metadata(tenant)

        materials = [RawMaterialPosition.from_record(m) for m in self.store.query_raw_materials(tenant)]
        return InventorySnapshot(
            materials=materials,
            recalculated=decision.should_recalculate,
            reasons=decision.reasons,
        )

    def force_recalculation(self, tenant: str) -> CascadeResult:
        self.cache.force_invalidate(tenant)
        result = self.cascade.recalculate(tenant)
        self.cache.update_cache_metadata(tenant)
        return result

    def get_finished_goods_with_shortfall(self, tenant: str) -> List[FinishedGoodPosition]:
        return [FinishedGoodPosition.from_record(g) for g in self.store.query_finished_goods(tenant)]

    def raw_material_shortfall(self, tenant: str, material_id: str) -> RawMaterialPosition:
        for material in self.store.query_raw_materials(tenant):
            if material.id == material_id:
                return RawMaterialPosition.from_record(material)
        raise RecordNotFound(f"Raw material {material_id} not found")

    def finished_good_shortfall(self, tenant: str, finished_good_id: str) -> FinishedGoodPosition:
        for good in self.store.query_finished_goods(tenant):
            if good.id == finished_good_id:
                return FinishedGoodPosition.from_record(good)
        raise RecordNotFound(f"Finished good {finished_good_id} not found")

    # ─────────────────────────────────────────────────────────────────────────
    # Manufacturing orders
    # ─────────────────────────────────────────────────────────────────────────

    def list_manufacturing_orders(self, tenant: str) -> List[ManufacturingOrderRecord]:
        return self.store.query_manufacturing_orders(tenant)

    def create_manufacturing_order(self, tenant: str, payload: NewManufacturingOrder) -> ManufacturingOrderRecord:
        if payload.parent_order_id or payload.rework_source_step_id:
            raise InvalidReworkRequest("Rework orders must be created through create_rework_order")
        if payload.quantity_required <= 0:
            raise InvalidRequest("quantity_required must be positive")
        return self.allocator.create_order(tenant, payload, OrderNumberKind.PRIMARY)

    def create_rework_order(
        self,
        tenant: str,
        parent_order_id: str,
        source_step_id: str,
        rework_quantity: float,
        rework_reason: Optional[str] = None,
        priority: Optional[str] = None,
        due_date: Optional[date] = None,
        special_instructions: Optional[str] = None,
    ) -> ManufacturingOrderRecord:
        parent = self.store.get_manufacturing_order(tenant, parent_order_id)
        if parent is None:
            raise RecordNotFound(f"Parent order {parent_order_id} not found")
        if rework_quantity <= 0:
            raise InvalidReworkRequest("Rework quantity must be positive")
        if rework_quantity > parent.quantity_required:
            raise InvalidReworkRequest(
                f"Rework quantity {rework_quantity} exceeds parent quantity {parent.quantity_required}"
            )
        source = self.store.get_step_instance(tenant, source_step_id)
        if source is None or source.order_id != parent.id:
            raise InvalidReworkRequest(
                f"Step instance {source_step_id} does not belong to order {parent.order_number}"
            )

        payload = NewManufacturingOrder(
            quantity_required=rework_quantity,
            product_config_id=parent.product_config_id,
            product_name=parent.product_name,
            priority=priority or parent.priority or OrderPriority.MEDIUM.value,
            due_date=due_date,
            special_instructions=special_instructions,
            parent_order_id=parent.id,
            rework_source_step_id=source.id,
            rework_quantity=rework_quantity,
            rework_reason=rework_reason,
        )
        order = self.allocator.create_order(
            tenant, payload, OrderNumberKind.REWORK, parent_order_number=parent.order_number
        )
        logger.info(
            f"Rework order {order.order_number} created from {source.step_name} "
            f"#{source.instance_number} of {parent.order_number}"
        )
        return order

    # ─────────────────────────────────────────────────────────────────────────
    # Steps & lineage
    # ─────────────────────────────────────────────────────────────────────────

    def start_step(self, tenant: str, request: NewStepInstance) -> StepInstanceRecord:
        return self.tracker.create_instance(tenant, request)

    def list_step_instances(self, tenant: str, order_id: str) -> List[StepInstanceRecord]:
        return self.store.query_step_instances(tenant, [order_id])

    def lineage(self, tenant: str, order_id: str) -> LineageEdges:
        return self.tracker.lineage_edges(tenant, order_id)

    def remaining_from_parent(self, tenant: str, parent_instance_id: str) -> Dict[str, float]:
        return self.tracker.remaining_from_parent(tenant, parent_instance_id)

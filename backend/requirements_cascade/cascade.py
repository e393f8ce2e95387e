"""
Requirements Cascade - Calculator
=================================

Two-level demand cascade:

    live demand -> finished good shortfall -> raw material consumption (BOM)
                -> raw material procurement shortfall

Only the derived `required` field is persisted on each raw material.
Shortfall is never stored; it is recomputed on read with the same formula.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd
from sqlalchemy.exc import SQLAlchemyError

from requirements_cascade.config import Settings
from requirements_cascade.errors import PartialUpdateFailure, RequirementsError
from requirements_cascade.models import utcnow
from requirements_cascade.records import (
    LIVE_ORDER_STATUSES,
    BOMEntryRecord,
    FinishedGoodRecord,
    OrderItemRecord,
    RawMaterialRecord,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# READ-TIME FORMULAS
# ═══════════════════════════════════════════════════════════════════════════════

def finished_good_net_position(
    required_quantity: float,
    threshold: float,
    current_stock: float,
    in_manufacturing: float,
) -> float:
    """Unclamped gap; negative means surplus."""
    return (required_quantity + threshold) - (current_stock + in_manufacturing)


def finished_good_shortfall(
    required_quantity: float,
    threshold: float,
    current_stock: float,
    in_manufacturing: float,
) -> float:
    return max(0.0, finished_good_net_position(required_quantity, threshold, current_stock, in_manufacturing))


def raw_material_net_position(
    total_required: float,
    minimum_stock: float,
    current_stock: float,
    in_procurement: float,
) -> float:
    """Unclamped gap; `total_required` itself is never clamped."""
    return (total_required + minimum_stock) - (current_stock + in_procurement)


def raw_material_shortfall(
    total_required: float,
    minimum_stock: float,
    current_stock: float,
    in_procurement: float,
) -> float:
    return max(0.0, raw_material_net_position(total_required, minimum_stock, current_stock, in_procurement))


def aggregate_live_demand(items: Iterable[OrderItemRecord]) -> Dict[str, float]:
    """
    Sum the outstanding quantity of live order items per product config.

    Remaining = quantity - fulfilled_quantity. Items with nothing remaining
    and items outside the live statuses contribute nothing.
    """
    rows = [
        {"product_config_id": item.product_config_id, "remaining": item.remaining_quantity}
        for item in items
        if item.status in LIVE_ORDER_STATUSES
    ]
    df = pd.DataFrame(rows, columns=["product_config_id", "remaining"])
    df = df[df["remaining"] > 0]
    if df.empty:
        return {}
    totals = df.groupby("product_config_id")["remaining"].sum()
    return {str(config_id): float(qty) for config_id, qty in totals.items()}


# ═══════════════════════════════════════════════════════════════════════════════
# RESULT STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class MaterialRequirement:
    """Cascade output for one raw material."""
    material_id: str
    required: float
    shortfall: float
    net_position: float


@dataclass
class CascadeResult:
    """Result of one recalculation run for a tenant."""
    tenant: str
    calculated_at: datetime
    requirements: Dict[str, MaterialRequirement] = field(default_factory=dict)
    finished_goods_processed: int = 0
    materials_updated: int = 0

    def as_mapping(self) -> Dict[str, Dict[str, float]]:
        return {
            material_id: {"required": req.required, "shortfall": req.shortfall}
            for material_id, req in self.requirements.items()
        }


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

class RequirementsCascadeEngine:
    """
    Recomputes raw material requirements for a tenant from scratch.

    Every run is a full recomputation, so overlapping runs for the same tenant
    converge on the same persisted values.
    """

    def __init__(
        self,
        store,
        refresh_demand: Optional[bool] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.refresh_demand = Settings.get().refresh_demand if refresh_demand is None else refresh_demand
        self._clock = clock

    def refresh_finished_good_demand(self, tenant: str) -> Dict[str, float]:
        """Re-derive every finished good's required_quantity from live order items."""
        items = self.store.query_order_items(tenant, LIVE_ORDER_STATUSES)
        quantities = aggregate_live_demand(items)
        updated = self.store.update_finished_good_demand(tenant, quantities)
        logger.info(
            f"Refreshed finished good demand for {tenant}: "
            f"{len(items)} live items, {len(quantities)} configs, {updated} rows set"
        )
        return quantities

    @staticmethod
    def compute_requirements(
        finished_goods: List[FinishedGoodRecord],
        raw_materials: List[RawMaterialRecord],
        bom_entries: List[BOMEntryRecord],
    ) -> Dict[str, MaterialRequirement]:
        """Pure cascade over in-memory snapshots."""
        fg = pd.DataFrame(
            [
                {
                    "product_config_id": good.product_config_id,
                    "required_quantity": good.required_quantity,
                    "threshold": good.threshold,
                    "current_stock": good.current_stock,
                    "in_manufacturing": good.in_manufacturing,
                }
                for good in finished_goods
            ],
            columns=["product_config_id", "required_quantity", "threshold", "current_stock", "in_manufacturing"],
        )
        fg["shortfall"] = np.maximum(
            0.0,
            fg["required_quantity"] + fg["threshold"] - (fg["current_stock"] + fg["in_manufacturing"]),
        )

        bom = pd.DataFrame(
            [
                {
                    "product_config_id": entry.product_config_id,
                    "raw_material_id": entry.raw_material_id,
                    "quantity_required": float(entry.quantity_required),
                }
                for entry in bom_entries
            ],
            columns=["product_config_id", "raw_material_id", "quantity_required"],
        )

        # A material used by N configs accumulates demand from all N, and from
        # every finished good sharing each config.
        merged = bom.merge(fg[["product_config_id", "shortfall"]], on="product_config_id", how="inner")
        merged["demand"] = merged["shortfall"] * merged["quantity_required"].astype(float)
        totals = merged.groupby("raw_material_id")["demand"].sum()

        requirements: Dict[str, MaterialRequirement] = {}
        for material in raw_materials:
            total_required = float(totals.get(material.id, 0.0))
            net = raw_material_net_position(
                total_required, material.minimum_stock, material.current_stock, material.in_procurement
            )
            requirements[material.id] = MaterialRequirement(
                material_id=material.id,
                required=total_required,
                shortfall=max(0.0, net),
                net_position=net,
            )
            logger.debug(f"Material {material.name}: required={total_required}, shortfall={max(0.0, net)}")
        return requirements

    def recalculate(self, tenant: str) -> CascadeResult:
        """
        Run the cascade and persist `required` + `last_updated` per raw material.

        Raises:
            PartialUpdateFailure: some, but not all, rows failed to persist.
                Rows already written stay written.
        """
        if self.refresh_demand:
            self.refresh_finished_good_demand(tenant)

        finished_goods = self.store.query_finished_goods(tenant)
        raw_materials = self.store.query_raw_materials(tenant)
        bom_entries = self.store.query_bom_entries(tenant)

        requirements = self.compute_requirements(finished_goods, raw_materials, bom_entries)
        calculated_at = self._clock()

        failed_ids: List[str] = []
        first_error: Optional[Exception] = None
        for material_id, req in requirements.items():
            try:
                self.store.update_raw_material_required(tenant, material_id, req.required, calculated_at)
            except (RequirementsError, SQLAlchemyError) as exc:
                failed_ids.append(material_id)
                if first_error is None:
                    first_error = exc

        if failed_ids:
            if len(failed_ids) == len(requirements):
                raise first_error
            logger.error(
                f"Partial update failure for {tenant}: {len(failed_ids)} of {len(requirements)} "
                f"raw materials failed: {failed_ids}"
            )
            raise PartialUpdateFailure(failed_ids, len(requirements)) from first_error

        logger.info(
            f"Recalculated requirements for {tenant}: {len(finished_goods)} finished goods, "
            f"{len(requirements)} raw materials updated"
        )
        return CascadeResult(
            tenant=tenant,
            calculated_at=calculated_at,
            requirements=requirements,
            finished_goods_processed=len(finished_goods),
            materials_updated=len(requirements),
        )

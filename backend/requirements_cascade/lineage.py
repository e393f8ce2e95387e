"""
Requirements Cascade - Step Instance & Lineage Tracker
======================================================

Records each execution instance of a production step against a
manufacturing order and derives rework status along instance chains.

Rework propagation (evaluated once, at creation):
- no parent instance: origin and is_rework are taken as supplied
- parent carries an origin, new step order <= origin step order:
  origin is propagated and is_rework becomes True
- parent carries an origin, new step order > origin step order:
  origin is dropped and is_rework stays as supplied
- either step missing from the tenant's step configuration:
  origin is dropped and is_rework stays as supplied (logged)

Lineage graph:
- progression edges: instance -> instance of a later step in the same order
- rework edges: origin step instance -> rework order spawned from it
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from requirements_cascade.errors import ConfigurationMissing, InvalidRequest, RecordNotFound
from requirements_cascade.models import utcnow
from requirements_cascade.records import ManufacturingOrderRecord, StepInstanceRecord

logger = logging.getLogger(__name__)


@dataclass
class NewStepInstance:
    """Request to start a step instance."""
    order_id: str
    step_name: str
    parent_instance_id: Optional[str] = None
    origin_step_id: Optional[str] = None
    is_rework: bool = False
    status: str = "in_progress"
    quantity_assigned: Optional[float] = None
    weight_assigned: Optional[float] = None
    assigned_worker: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class ProgressionEdge:
    order_id: str
    from_instance_id: str
    to_instance_id: str
    from_step: str
    to_step: str
    explicit: bool


@dataclass
class ReworkEdge:
    from_instance_id: str
    origin_order_id: str
    rework_order_id: str
    rework_order_number: str


@dataclass
class LineageEdges:
    order_id: str
    progression: List[ProgressionEdge] = field(default_factory=list)
    rework: List[ReworkEdge] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "progression": [asdict(edge) for edge in self.progression],
            "rework": [asdict(edge) for edge in self.rework],
        }


# ═══════════════════════════════════════════════════════════════════════════════
# PURE RULES
# ═══════════════════════════════════════════════════════════════════════════════

def _step_order(step_orders: Dict[str, int], step_name: str) -> int:
    if step_name not in step_orders:
        raise ConfigurationMissing(step_name)
    return step_orders[step_name]


def resolve_rework_origin(
    new_step_name: str,
    parent: Optional[StepInstanceRecord],
    origin_step_name: Optional[str],
    step_orders: Dict[str, int],
    requested_origin_id: Optional[str] = None,
    requested_is_rework: bool = False,
) -> Tuple[Optional[str], bool]:
    """
    Returns (origin_step_id, is_rework) for a new instance.

    `origin_step_name` is the step of the parent's origin instance, or None
    when that instance could not be found.
    """
    if parent is None:
        return requested_origin_id, requested_is_rework

    if requested_origin_id is not None:
        logger.warning(
            f"Ignoring supplied origin {requested_origin_id} for step '{new_step_name}': "
            f"parent instance {parent.id} governs lineage"
        )

    if parent.origin_step_id is None:
        return None, requested_is_rework

    if origin_step_name is None:
        logger.warning(f"Origin instance {parent.origin_step_id} not found; not propagating rework")
        return None, requested_is_rework

    try:
        new_order = _step_order(step_orders, new_step_name)
        origin_order = _step_order(step_orders, origin_step_name)
    except ConfigurationMissing as exc:
        logger.warning(f"{exc}; keeping is_rework={requested_is_rework} without propagation")
        return None, requested_is_rework

    if new_order <= origin_order:
        return parent.origin_step_id, True
    return None, requested_is_rework


def remaining_quantity(parent: StepInstanceRecord, children: Iterable[StepInstanceRecord]) -> float:
    """Quantity received by `parent` not yet assigned to its child instances."""
    assigned = sum(child.quantity_assigned or 0.0 for child in children)
    return max(0.0, (parent.quantity_received or 0.0) - assigned)


def remaining_weight(parent: StepInstanceRecord, children: Iterable[StepInstanceRecord]) -> float:
    assigned = sum(child.weight_assigned or 0.0 for child in children)
    return max(0.0, (parent.weight_received or 0.0) - assigned)


def build_lineage_edges(
    order_id: str,
    orders: List[ManufacturingOrderRecord],
    instances: List[StepInstanceRecord],
    step_orders: Dict[str, int],
) -> LineageEdges:
    """
    Progression and rework edges for `order_id` and every rework order
    descending from it, over one snapshot of orders and instances.

    Progression: an explicit parent link within the same order wins.
    Otherwise an instance is linked from the latest instance (highest
    instance_number) of the nearest preceding configured step present in
    the order. Instances of unconfigured steps get no inferred edge.

    Output is deduplicated and sorted, so equal snapshots give equal results.
    """
    orders_by_id = {order.id: order for order in orders}
    if order_id not in orders_by_id:
        raise RecordNotFound(f"Manufacturing order {order_id} not found")

    rework_children: Dict[str, List[ManufacturingOrderRecord]] = defaultdict(list)
    for order in orders:
        if order.parent_order_id:
            rework_children[order.parent_order_id].append(order)

    instances_by_id = {inst.id: inst for inst in instances}
    instances_by_order: Dict[str, List[StepInstanceRecord]] = defaultdict(list)
    for inst in instances:
        instances_by_order[inst.order_id].append(inst)

    # Walk the rework tree rooted at order_id
    walk: List[str] = []
    pending = [order_id]
    while pending:
        current = pending.pop(0)
        if current in walk:
            continue
        walk.append(current)
        pending.extend(child.id for child in sorted(rework_children[current], key=lambda o: o.order_number))

    progression: Dict[Tuple[str, str], Tuple[tuple, ProgressionEdge]] = {}
    rework: Dict[Tuple[str, str], Tuple[tuple, ReworkEdge]] = {}

    for current in walk:
        order = orders_by_id[current]
        members = instances_by_order.get(current, [])

        latest_by_step: Dict[str, StepInstanceRecord] = {}
        for inst in members:
            best = latest_by_step.get(inst.step_name)
            if best is None or inst.instance_number > best.instance_number:
                latest_by_step[inst.step_name] = inst
        configured = sorted(
            (step_orders[name], name) for name in latest_by_step if name in step_orders
        )

        for inst in members:
            to_order = step_orders.get(inst.step_name)
            sort_key = (order.order_number, to_order if to_order is not None else -1, inst.step_name, inst.instance_number)

            source: Optional[StepInstanceRecord] = None
            explicit = False
            parent = instances_by_id.get(inst.parent_instance_id) if inst.parent_instance_id else None
            if parent is not None and parent.order_id == current:
                source, explicit = parent, True
            elif to_order is not None:
                preceding = [name for step_order, name in configured if step_order < to_order]
                if preceding:
                    source = latest_by_step[preceding[-1]]

            if source is None:
                continue
            edge = ProgressionEdge(
                order_id=current,
                from_instance_id=source.id,
                to_instance_id=inst.id,
                from_step=source.step_name,
                to_step=inst.step_name,
                explicit=explicit,
            )
            progression.setdefault((source.id, inst.id), (sort_key + (source.id,), edge))

        if current == order_id or not order.parent_order_id or not order.rework_source_step_id:
            continue
        source = instances_by_id.get(order.rework_source_step_id)
        if source is None or source.order_id != order.parent_order_id:
            logger.warning(
                f"Rework order {order.order_number}: source instance {order.rework_source_step_id} "
                f"not found in parent order {order.parent_order_id}; edge skipped"
            )
            continue
        edge = ReworkEdge(
            from_instance_id=source.id,
            origin_order_id=order.parent_order_id,
            rework_order_id=order.id,
            rework_order_number=order.order_number,
        )
        rework.setdefault((source.id, order.id), ((order.order_number, source.id), edge))

    return LineageEdges(
        order_id=order_id,
        progression=[edge for _, edge in sorted(progression.values(), key=lambda item: item[0])],
        rework=[edge for _, edge in sorted(rework.values(), key=lambda item: item[0])],
    )


# ═══════════════════════════════════════════════════════════════════════════════
# TRACKER
# ═══════════════════════════════════════════════════════════════════════════════

class StepLineageTracker:
    """Creates step instances; the only writer of manufacturing_order_step_data."""

    def __init__(self, store):
        self.store = store

    def create_instance(self, tenant: str, request: NewStepInstance) -> StepInstanceRecord:
        if self.store.get_manufacturing_order(tenant, request.order_id) is None:
            raise RecordNotFound(f"Manufacturing order {request.order_id} not found")

        parent = None
        origin_step_name = None
        step_orders: Dict[str, int] = {}
        if request.parent_instance_id:
            parent = self.store.get_step_instance(tenant, request.parent_instance_id)
            if parent is None:
                raise RecordNotFound(f"Parent step instance {request.parent_instance_id} not found")
            if parent.order_id != request.order_id:
                raise InvalidRequest(
                    f"Parent step instance {parent.id} belongs to another manufacturing order"
                )
            if parent.origin_step_id:
                origin = self.store.get_step_instance(tenant, parent.origin_step_id)
                origin_step_name = origin.step_name if origin is not None else None
                step_orders = self.store.get_step_order_config(tenant)
        elif request.origin_step_id:
            if self.store.get_step_instance(tenant, request.origin_step_id) is None:
                raise RecordNotFound(f"Origin step instance {request.origin_step_id} not found")

        origin_step_id, is_rework = resolve_rework_origin(
            request.step_name,
            parent,
            origin_step_name,
            step_orders,
            requested_origin_id=request.origin_step_id,
            requested_is_rework=request.is_rework,
        )

        instance_number = self.store.next_instance_number(request.order_id, request.step_name)
        record = self.store.insert_step_instance(
            tenant,
            {
                "order_id": request.order_id,
                "step_name": request.step_name,
                "instance_number": instance_number,
                "parent_instance_id": request.parent_instance_id,
                "origin_step_id": origin_step_id,
                "is_rework": is_rework,
                "status": request.status,
                "quantity_assigned": request.quantity_assigned,
                "weight_assigned": request.weight_assigned,
                "assigned_worker": request.assigned_worker,
                "notes": request.notes,
                "started_at": utcnow(),
            },
        )
        logger.info(
            f"Started {request.step_name} #{instance_number} on order {request.order_id}"
            + (f" (rework of {origin_step_id})" if is_rework and origin_step_id else "")
        )
        return record

    def remaining_from_parent(self, tenant: str, parent_instance_id: str) -> Dict[str, float]:
        parent = self.store.get_step_instance(tenant, parent_instance_id)
        if parent is None:
            raise RecordNotFound(f"Step instance {parent_instance_id} not found")
        children = [
            inst for inst in self.store.query_step_instances(tenant)
            if inst.parent_instance_id == parent_instance_id
        ]
        return {
            "quantity": remaining_quantity(parent, children),
            "weight": remaining_weight(parent, children),
        }

    def lineage_edges(self, tenant: str, order_id: str) -> LineageEdges:
        return build_lineage_edges(
            order_id,
            self.store.query_manufacturing_orders(tenant),
            self.store.query_step_instances(tenant),
            self.store.get_step_order_config(tenant),
        )

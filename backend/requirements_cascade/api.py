"""
Requirements Cascade - API
==========================

Endpoints REST para o cálculo de necessidades (MRP) e ordens de fabrico.

The tenant is resolved per request from `X-User-Id` through the merchant_users
table and passed explicitly to the service. `X-Merchant-Id` is a trusted-proxy
header: it is honoured only when MRP_TRUST_MERCHANT_HEADER is on, and ignored
otherwise.

Endpoints:
- GET    /requirements/inventory/raw-materials            - Raw materials + shortfall (smart cache)
- GET    /requirements/inventory/raw-materials/{id}       - One raw material's shortfall
- GET    /requirements/inventory/finished-goods           - Finished goods + shortfall
- GET    /requirements/inventory/finished-goods/{id}      - One finished good's shortfall
- POST   /requirements/recalculate                        - Forced recalculation
- GET    /requirements/cache                              - Cache decision (dry run)
- DELETE /requirements/cache                              - Invalidate cache metadata
- GET    /requirements/orders                             - List manufacturing orders
- POST   /requirements/orders                             - Create primary order
- POST   /requirements/orders/rework                      - Create rework order
- GET    /requirements/orders/{id}/steps                  - Step instances of an order
- GET    /requirements/orders/{id}/lineage                - Progression + rework edges
- POST   /requirements/steps                              - Start a step instance
- GET    /requirements/steps/{id}/remaining               - Remaining qty/weight from parent
- GET    /requirements/settings                           - Active settings
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from requirements_cascade.config import Settings
from requirements_cascade.errors import RecordNotFound, RequirementsError
from requirements_cascade.lineage import NewStepInstance
from requirements_cascade.records import NewManufacturingOrder
from requirements_cascade.schemas import (
    CacheStatusResponse,
    FinishedGoodPositionRead,
    InventoryResponse,
    LineageResponse,
    ManufacturingOrderCreate,
    ManufacturingOrderRead,
    MaterialRequirementRead,
    RawMaterialPositionRead,
    RecalculationResponse,
    RemainingResponse,
    ReworkOrderCreate,
    StepInstanceCreate,
    StepInstanceRead,
)
from requirements_cascade.service import (
    FinishedGoodPosition,
    RawMaterialPosition,
    RequirementsPlanningService,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/requirements", tags=["Requirements Cascade"])

_STATUS_BY_KIND = {
    "not_found": 404,
    "invalid_request": 422,
    "invalid_rework": 422,
    "allocation_exhausted": 409,
    "store_unavailable": 503,
}

_service: Optional[RequirementsPlanningService] = None


def get_service() -> RequirementsPlanningService:
    global _service
    if _service is None:
        _service = RequirementsPlanningService()
    return _service


def get_tenant(
    x_merchant_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    service: RequirementsPlanningService = Depends(get_service),
) -> str:
    if x_merchant_id:
        if Settings.get().trust_merchant_header:
            return x_merchant_id
        logger.warning("Ignoring X-Merchant-Id header: MRP_TRUST_MERCHANT_HEADER is off")
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    try:
        return service.resolve_tenant(x_user_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except RequirementsError as exc:
        raise _http_error(exc) from exc


def _http_error(exc: RequirementsError) -> HTTPException:
    status = _STATUS_BY_KIND.get(exc.kind, 500)
    if status >= 500:
        logger.error(f"Requirements operation failed ({exc.kind}): {exc}")
    return HTTPException(status_code=status, detail=exc.to_dict())


def _material_read(position: RawMaterialPosition) -> RawMaterialPositionRead:
    m = position.material
    return RawMaterialPositionRead(
        id=m.id,
        name=m.name,
        type=m.type,
        unit=m.unit,
        current_stock=m.current_stock,
        in_procurement=m.in_procurement,
        minimum_stock=m.minimum_stock,
        required=m.required,
        last_updated=m.last_updated,
        shortfall=position.shortfall,
        net_position=position.net_position,
    )


def _finished_good_read(position: FinishedGoodPosition) -> FinishedGoodPositionRead:
    g = position.good
    return FinishedGoodPositionRead(
        id=g.id,
        product_config_id=g.product_config_id,
        product_code=g.product_code,
        current_stock=g.current_stock,
        in_manufacturing=g.in_manufacturing,
        threshold=g.threshold,
        required_quantity=g.required_quantity,
        last_updated=g.last_updated,
        shortfall=position.shortfall,
        net_position=position.net_position,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# INVENTORY & CASCADE
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/inventory/raw-materials", response_model=InventoryResponse)
def api_raw_materials(tenant: str = Depends(get_tenant), service=Depends(get_service)):
    """Raw materials with read-time shortfall, recalculating only when inputs changed."""
    try:
        snapshot = service.get_raw_materials_with_smart_caching(tenant)
    except RequirementsError as exc:
        raise _http_error(exc) from exc
    return InventoryResponse(
        materials=[_material_read(p) for p in snapshot.materials],
        recalculated=snapshot.recalculated,
        reasons=snapshot.reasons,
    )


@router.get("/inventory/raw-materials/{material_id}", response_model=RawMaterialPositionRead)
def api_raw_material(material_id: str, tenant: str = Depends(get_tenant), service=Depends(get_service)):
    try:
        return _material_read(service.raw_material_shortfall(tenant, material_id))
    except RequirementsError as exc:
        raise _http_error(exc) from exc


@router.get("/inventory/finished-goods", response_model=List[FinishedGoodPositionRead])
def api_finished_goods(tenant: str = Depends(get_tenant), service=Depends(get_service)):
    try:
        return [_finished_good_read(p) for p in service.get_finished_goods_with_shortfall(tenant)]
    except RequirementsError as exc:
        raise _http_error(exc) from exc


@router.get("/inventory/finished-goods/{finished_good_id}", response_model=FinishedGoodPositionRead)
def api_finished_good(finished_good_id: str, tenant: str = Depends(get_tenant), service=Depends(get_service)):
    try:
        return _finished_good_read(service.finished_good_shortfall(tenant, finished_good_id))
    except RequirementsError as exc:
        raise _http_error(exc) from exc


@router.post("/recalculate", response_model=RecalculationResponse)
def api_recalculate(tenant: str = Depends(get_tenant), service=Depends(get_service)):
    """Invalidate the cache and recalculate unconditionally."""
    try:
        result = service.force_recalculation(tenant)
    except RequirementsError as exc:
        raise _http_error(exc) from exc
    return RecalculationResponse(
        tenant=result.tenant,
        calculated_at=result.calculated_at,
        finished_goods_processed=result.finished_goods_processed,
        materials_updated=result.materials_updated,
        requirements={
            material_id: MaterialRequirementRead(**values)
            for material_id, values in result.as_mapping().items()
        },
    )


@router.get("/cache", response_model=CacheStatusResponse)
def api_cache_status(tenant: str = Depends(get_tenant), service=Depends(get_service)):
    try:
        decision = service.cache.check(tenant)
    except RequirementsError as exc:
        raise _http_error(exc) from exc
    return CacheStatusResponse(
        should_recalculate=decision.should_recalculate,
        reasons=decision.reasons,
        orders_fingerprint=decision.orders_fingerprint,
        stock_fingerprint=decision.stock_fingerprint,
    )


@router.delete("/cache", status_code=204)
def api_invalidate_cache(tenant: str = Depends(get_tenant), service=Depends(get_service)):
    try:
        service.cache.force_invalidate(tenant)
    except RequirementsError as exc:
        raise _http_error(exc) from exc


# ═══════════════════════════════════════════════════════════════════════════════
# MANUFACTURING ORDERS
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/orders", response_model=List[ManufacturingOrderRead])
def api_list_orders(tenant: str = Depends(get_tenant), service=Depends(get_service)):
    try:
        return [ManufacturingOrderRead.model_validate(o) for o in service.list_manufacturing_orders(tenant)]
    except RequirementsError as exc:
        raise _http_error(exc) from exc


@router.post("/orders", response_model=ManufacturingOrderRead, status_code=201)
def api_create_order(payload: ManufacturingOrderCreate, tenant: str = Depends(get_tenant), service=Depends(get_service)):
    """Create a primary manufacturing order with the next free MO number."""
    try:
        order = service.create_manufacturing_order(tenant, NewManufacturingOrder(**payload.model_dump()))
    except RequirementsError as exc:
        raise _http_error(exc) from exc
    return ManufacturingOrderRead.model_validate(order)


@router.post("/orders/rework", response_model=ManufacturingOrderRead, status_code=201)
def api_create_rework_order(payload: ReworkOrderCreate, tenant: str = Depends(get_tenant), service=Depends(get_service)):
    """Create a rework order numbered off its parent (e.g. MO000001-R1)."""
    try:
        order = service.create_rework_order(tenant, **payload.model_dump())
    except RequirementsError as exc:
        raise _http_error(exc) from exc
    return ManufacturingOrderRead.model_validate(order)


@router.get("/orders/{order_id}/steps", response_model=List[StepInstanceRead])
def api_order_steps(order_id: str, tenant: str = Depends(get_tenant), service=Depends(get_service)):
    try:
        return [StepInstanceRead.model_validate(s) for s in service.list_step_instances(tenant, order_id)]
    except RequirementsError as exc:
        raise _http_error(exc) from exc


@router.get("/orders/{order_id}/lineage", response_model=LineageResponse)
def api_order_lineage(order_id: str, tenant: str = Depends(get_tenant), service=Depends(get_service)):
    try:
        return LineageResponse(**service.lineage(tenant, order_id).to_dict())
    except RequirementsError as exc:
        raise _http_error(exc) from exc


# ═══════════════════════════════════════════════════════════════════════════════
# STEPS
# ═══════════════════════════════════════════════════════════════════════════════

@router.post("/steps", response_model=StepInstanceRead, status_code=201)
def api_start_step(payload: StepInstanceCreate, tenant: str = Depends(get_tenant), service=Depends(get_service)):
    try:
        instance = service.start_step(tenant, NewStepInstance(**payload.model_dump()))
    except RequirementsError as exc:
        raise _http_error(exc) from exc
    return StepInstanceRead.model_validate(instance)


@router.get("/steps/{instance_id}/remaining", response_model=RemainingResponse)
def api_remaining(instance_id: str, tenant: str = Depends(get_tenant), service=Depends(get_service)):
    try:
        remaining = service.remaining_from_parent(tenant, instance_id)
    except RequirementsError as exc:
        raise _http_error(exc) from exc
    return RemainingResponse(parent_instance_id=instance_id, **remaining)


@router.get("/settings")
def api_settings() -> Dict[str, Any]:
    return Settings.to_dict()

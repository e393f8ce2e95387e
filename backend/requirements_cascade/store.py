"""
Tenant-scoped store accessor.

Every read and write is scoped by an explicit merchant (tenant) id. Each call
runs in its own short session; nothing spans a whole cascade run.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from requirements_cascade.errors import RecordNotFound, TransientStoreError, UniqueConstraintViolation
from requirements_cascade.models import (
    ORDER_NUMBER_CONSTRAINT,
    CacheMetadataRecord,
    FinishedGood,
    ManufacturingOrder,
    MerchantStepConfig,
    MerchantUser,
    OrderItem,
    ProductConfigMaterial,
    RawMaterial,
    SessionLocal,
    StepInstance,
    StepInstanceCounter,
)
from requirements_cascade.records import (
    BOMEntryRecord,
    FinishedGoodRecord,
    ManufacturingOrderRecord,
    NewManufacturingOrder,
    OrderItemRecord,
    RawMaterialRecord,
    StepInstanceRecord,
)

logger = logging.getLogger(__name__)

_COUNTER_ATTEMPTS = 3


def _is_order_number_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return (
        ORDER_NUMBER_CONSTRAINT in message
        or "manufacturing_orders.order_number" in message
    )


# ═══════════════════════════════════════════════════════════════════════════════
# ROW -> RECORD
# ═══════════════════════════════════════════════════════════════════════════════

def _order_item_record(row: OrderItem) -> OrderItemRecord:
    return OrderItemRecord(
        id=row.id,
        product_config_id=row.product_config_id,
        quantity=row.quantity,
        status=row.status,
        updated_at=row.updated_at,
        fulfilled_quantity=row.fulfilled_quantity or 0.0,
    )


def _finished_good_record(row: FinishedGood) -> FinishedGoodRecord:
    return FinishedGoodRecord(
        id=row.id,
        product_config_id=row.product_config_id,
        current_stock=row.current_stock or 0.0,
        in_manufacturing=row.in_manufacturing or 0.0,
        threshold=row.threshold or 0.0,
        required_quantity=row.required_quantity or 0.0,
        product_code=row.product_code,
        last_updated=row.last_updated,
        updated_at=row.updated_at,
    )


def _raw_material_record(row: RawMaterial) -> RawMaterialRecord:
    return RawMaterialRecord(
        id=row.id,
        name=row.name,
        current_stock=row.current_stock or 0.0,
        in_procurement=row.in_procurement or 0.0,
        minimum_stock=row.minimum_stock or 0.0,
        required=row.required or 0.0,
        in_manufacturing=row.in_manufacturing or 0.0,
        type=row.type,
        unit=row.unit,
        last_updated=row.last_updated,
        updated_at=row.updated_at,
    )


def _order_record(row: ManufacturingOrder) -> ManufacturingOrderRecord:
    return ManufacturingOrderRecord(
        id=row.id,
        order_number=row.order_number,
        quantity_required=row.quantity_required,
        product_config_id=row.product_config_id,
        product_name=row.product_name,
        priority=row.priority,
        status=row.status,
        due_date=row.due_date,
        special_instructions=row.special_instructions,
        parent_order_id=row.parent_order_id,
        rework_source_step_id=row.rework_source_step_id,
        rework_quantity=row.rework_quantity,
        rework_reason=row.rework_reason,
        created_at=row.created_at,
    )


def _step_record(row: StepInstance) -> StepInstanceRecord:
    return StepInstanceRecord(
        id=row.id,
        order_id=row.order_id,
        step_name=row.step_name,
        instance_number=row.instance_number,
        parent_instance_id=row.parent_instance_id,
        origin_step_id=row.origin_step_id,
        is_rework=bool(row.is_rework),
        status=row.status,
        quantity_assigned=row.quantity_assigned,
        quantity_received=row.quantity_received,
        weight_assigned=row.weight_assigned,
        weight_received=row.weight_received,
        assigned_worker=row.assigned_worker,
        notes=row.notes,
        created_at=row.created_at,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# STORE
# ═══════════════════════════════════════════════════════════════════════════════

class TenantStore:
    """
    Relational store accessor used by every engine in this package.

    Error translation:
    - connection failures, timeouts, locked databases -> TransientStoreError
    - order number uniqueness violations -> UniqueConstraintViolation
    - anything else propagates unmodified
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except (OperationalError, PoolTimeoutError) as exc:
            session.rollback()
            raise TransientStoreError(f"Store unavailable: {exc}") from exc
        except DBAPIError as exc:
            session.rollback()
            if exc.connection_invalidated:
                raise TransientStoreError(f"Store connection lost: {exc}") from exc
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ─────────────────────────────────────────────────────────────────────────
    # Tenant resolution
    # ─────────────────────────────────────────────────────────────────────────

    def resolve_tenant(self, user_id: str) -> str:
        """Map an authenticated user to their merchant id."""
        with self._session_scope() as session:
            row = session.get(MerchantUser, user_id)
            if row is None:
                raise RecordNotFound(f"No merchant registered for user {user_id}")
            return row.merchant_id

    # ─────────────────────────────────────────────────────────────────────────
    # Demand, stock, BOM
    # ─────────────────────────────────────────────────────────────────────────

    def query_order_items(self, tenant: str, statuses: Optional[Iterable[str]] = None) -> List[OrderItemRecord]:
        with self._session_scope() as session:
            stmt = select(OrderItem).where(OrderItem.merchant_id == tenant)
            if statuses is not None:
                stmt = stmt.where(OrderItem.status.in_(list(statuses)))
            return [_order_item_record(row) for row in session.scalars(stmt.order_by(OrderItem.id))]

    def query_finished_goods(self, tenant: str) -> List[FinishedGoodRecord]:
        with self._session_scope() as session:
            stmt = select(FinishedGood).where(FinishedGood.merchant_id == tenant).order_by(FinishedGood.id)
            return [_finished_good_record(row) for row in session.scalars(stmt)]

    def query_raw_materials(self, tenant: str) -> List[RawMaterialRecord]:
        with self._session_scope() as session:
            stmt = select(RawMaterial).where(RawMaterial.merchant_id == tenant).order_by(RawMaterial.name, RawMaterial.id)
            return [_raw_material_record(row) for row in session.scalars(stmt)]

    def query_bom_entries(self, tenant: str) -> List[BOMEntryRecord]:
        with self._session_scope() as session:
            stmt = (
                select(ProductConfigMaterial)
                .where(ProductConfigMaterial.merchant_id == tenant)
                .order_by(ProductConfigMaterial.id)
            )
            return [
                BOMEntryRecord(
                    product_config_id=row.product_config_id,
                    raw_material_id=row.raw_material_id,
                    quantity_required=row.quantity_required,
                    unit=row.unit,
                )
                for row in session.scalars(stmt)
            ]

    def update_raw_material_required(self, tenant: str, material_id: str, required: float, last_updated: datetime) -> None:
        """Write the derived `required` field only. Stock fields and updated_at are left untouched."""
        with self._session_scope() as session:
            result = session.execute(
                update(RawMaterial)
                .where(RawMaterial.id == material_id, RawMaterial.merchant_id == tenant)
                .values(required=required, last_updated=last_updated, updated_at=RawMaterial.updated_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise RecordNotFound(f"Raw material {material_id} not found")

    def update_finished_good_demand(self, tenant: str, quantities: Dict[str, float]) -> int:
        """Reset every finished good's required_quantity to 0, then apply the aggregates."""
        updated = 0
        with self._session_scope() as session:
            session.execute(
                update(FinishedGood)
                .where(FinishedGood.merchant_id == tenant)
                .values(required_quantity=0, updated_at=FinishedGood.updated_at)
                .execution_options(synchronize_session=False)
            )
            for config_id, quantity in sorted(quantities.items()):
                result = session.execute(
                    update(FinishedGood)
                    .where(FinishedGood.merchant_id == tenant, FinishedGood.product_config_id == config_id)
                    .values(required_quantity=quantity, updated_at=FinishedGood.updated_at)
                    .execution_options(synchronize_session=False)
                )
                updated += result.rowcount
        return updated

    # ─────────────────────────────────────────────────────────────────────────
    # Manufacturing orders
    # ─────────────────────────────────────────────────────────────────────────

    def query_manufacturing_orders(self, tenant: str) -> List[ManufacturingOrderRecord]:
        with self._session_scope() as session:
            stmt = (
                select(ManufacturingOrder)
                .where(ManufacturingOrder.merchant_id == tenant)
                .order_by(ManufacturingOrder.order_number)
            )
            return [_order_record(row) for row in session.scalars(stmt)]

    def get_manufacturing_order(self, tenant: str, order_id: str) -> Optional[ManufacturingOrderRecord]:
        with self._session_scope() as session:
            row = session.scalars(
                select(ManufacturingOrder).where(
                    ManufacturingOrder.merchant_id == tenant, ManufacturingOrder.id == order_id
                )
            ).first()
            return _order_record(row) if row is not None else None

    def find_order_by_number(self, tenant: str, order_number: str) -> Optional[ManufacturingOrderRecord]:
        with self._session_scope() as session:
            row = session.scalars(
                select(ManufacturingOrder).where(
                    ManufacturingOrder.merchant_id == tenant,
                    ManufacturingOrder.order_number == order_number,
                )
            ).first()
            return _order_record(row) if row is not None else None

    def list_order_numbers(self, tenant: str, prefix: str) -> List[str]:
        with self._session_scope() as session:
            stmt = select(ManufacturingOrder.order_number).where(
                ManufacturingOrder.merchant_id == tenant,
                ManufacturingOrder.order_number.startswith(prefix, autoescape=True),
            )
            return list(session.scalars(stmt))

    def insert_manufacturing_order(
        self,
        tenant: str,
        order_number: str,
        payload: NewManufacturingOrder,
    ) -> ManufacturingOrderRecord:
        try:
            with self._session_scope() as session:
                row = ManufacturingOrder(merchant_id=tenant, order_number=order_number, **asdict(payload))
                session.add(row)
                session.flush()
                record = _order_record(row)
        except IntegrityError as exc:
            if _is_order_number_conflict(exc):
                raise UniqueConstraintViolation(
                    f"Order number {order_number} already exists", key=order_number
                ) from exc
            raise
        return record

    # ─────────────────────────────────────────────────────────────────────────
    # Step instances
    # ─────────────────────────────────────────────────────────────────────────

    def query_step_instances(self, tenant: str, order_ids: Optional[Iterable[str]] = None) -> List[StepInstanceRecord]:
        with self._session_scope() as session:
            stmt = select(StepInstance).where(StepInstance.merchant_id == tenant)
            if order_ids is not None:
                stmt = stmt.where(StepInstance.order_id.in_(list(order_ids)))
            stmt = stmt.order_by(StepInstance.order_id, StepInstance.step_name, StepInstance.instance_number)
            return [_step_record(row) for row in session.scalars(stmt)]

    def get_step_instance(self, tenant: str, instance_id: str) -> Optional[StepInstanceRecord]:
        with self._session_scope() as session:
            row = session.scalars(
                select(StepInstance).where(StepInstance.merchant_id == tenant, StepInstance.id == instance_id)
            ).first()
            return _step_record(row) if row is not None else None

    def insert_step_instance(self, tenant: str, fields: Dict[str, Any]) -> StepInstanceRecord:
        with self._session_scope() as session:
            row = StepInstance(merchant_id=tenant, **fields)
            session.add(row)
            session.flush()
            return _step_record(row)

    def next_instance_number(self, order_id: str, step_name: str) -> int:
        """
        Atomically increment the (order, step) counter and return the new value.

        A single UPDATE ... RETURNING does the increment. The first call for a
        pair inserts the counter row, seeded above any instance already stored.
        """
        for attempt in range(1, _COUNTER_ATTEMPTS + 1):
            try:
                with self._session_scope() as session:
                    value = session.execute(
                        update(StepInstanceCounter)
                        .where(
                            StepInstanceCounter.order_id == order_id,
                            StepInstanceCounter.step_name == step_name,
                        )
                        .values(last_value=StepInstanceCounter.last_value + 1)
                        .returning(StepInstanceCounter.last_value)
                        .execution_options(synchronize_session=False)
                    ).scalar_one_or_none()
                    if value is None:
                        seed = session.execute(
                            select(func.max(StepInstance.instance_number)).where(
                                StepInstance.order_id == order_id,
                                StepInstance.step_name == step_name,
                            )
                        ).scalar() or 0
                        value = seed + 1
                        session.add(StepInstanceCounter(order_id=order_id, step_name=step_name, last_value=value))
                return value
            except IntegrityError:
                # Another writer created the counter row first; increment theirs.
                logger.debug(f"Counter for {order_id}/{step_name} created concurrently (attempt {attempt})")
        raise TransientStoreError(f"Could not obtain instance number for {order_id}/{step_name}")

    # ─────────────────────────────────────────────────────────────────────────
    # Step configuration
    # ─────────────────────────────────────────────────────────────────────────

    def get_step_order_config(self, tenant: str) -> Dict[str, int]:
        with self._session_scope() as session:
            stmt = select(MerchantStepConfig).where(
                MerchantStepConfig.merchant_id == tenant,
                MerchantStepConfig.is_active.is_(True),
            )
            return {row.step_name: row.step_order for row in session.scalars(stmt)}

    # ─────────────────────────────────────────────────────────────────────────
    # Cache metadata (advisory)
    # ─────────────────────────────────────────────────────────────────────────

    def read_cache_metadata(self, tenant: str) -> Optional[Dict[str, Any]]:
        with self._session_scope() as session:
            row = session.get(CacheMetadataRecord, tenant)
            return row.payload if row is not None else None

    def write_cache_metadata(self, tenant: str, payload: Dict[str, Any]) -> None:
        with self._session_scope() as session:
            row = session.get(CacheMetadataRecord, tenant)
            if row is None:
                session.add(CacheMetadataRecord(merchant_id=tenant, payload=dict(payload)))
            else:
                row.payload = dict(payload)

    def delete_cache_metadata(self, tenant: str) -> None:
        with self._session_scope() as session:
            session.execute(delete(CacheMetadataRecord).where(CacheMetadataRecord.merchant_id == tenant))

"""
════════════════════════════════════════════════════════════════════════════════
REQUIREMENTS CASCADE MODELS - Tenant-scoped relational tables
════════════════════════════════════════════════════════════════════════════════

Tabelas (todas com merchant_id):
- merchant_users: utilizador -> merchant (resolução de tenant)
- product_configs / product_config_materials: SKU e BOM
- order_items: procura viva das encomendas
- finished_goods / raw_materials: stock e campos derivados
- manufacturing_orders: ordens de fabrico (primárias e de retrabalho)
- merchant_step_config: sequência de passos configurada por merchant
- manufacturing_order_step_data: instâncias de passos de produção
- step_instance_counters: contador atómico por (ordem, passo)
- mrp_cache_metadata: metadados do cache de recálculo (descartáveis)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from requirements_cascade.config import Settings

Base = declarative_base()

ORDER_NUMBER_CONSTRAINT = "uq_manufacturing_orders_merchant_number"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


def build_engine(database_url: str) -> Engine:
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


engine = build_engine(Settings.get().database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Optional[Engine] = None) -> None:
    Base.metadata.create_all(bind=bind or engine, checkfirst=True)


# ═══════════════════════════════════════════════════════════════════════════════
# TENANCY
# ═══════════════════════════════════════════════════════════════════════════════

class MerchantUser(Base):
    __tablename__ = "merchant_users"

    user_id = Column(String(64), primary_key=True)
    merchant_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


# ═══════════════════════════════════════════════════════════════════════════════
# PRODUCT CONFIGURATION & BOM
# ═══════════════════════════════════════════════════════════════════════════════

class ProductConfig(Base):
    """Sellable/manufacturable SKU definition."""
    __tablename__ = "product_configs"

    id = Column(String(36), primary_key=True, default=_uuid)
    merchant_id = Column(String(64), nullable=False, index=True)
    product_code = Column(String(128), nullable=False)
    category = Column(String(100), nullable=True)
    subcategory = Column(String(100), nullable=True)
    size_value = Column(Float, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_product_configs_merchant_code", "merchant_id", "product_code"),
    )


class ProductConfigMaterial(Base):
    """BOM entry: raw material quantity needed per unit of finished good."""
    __tablename__ = "product_config_materials"

    id = Column(String(36), primary_key=True, default=_uuid)
    merchant_id = Column(String(64), nullable=False, index=True)
    product_config_id = Column(String(36), ForeignKey("product_configs.id"), nullable=False, index=True)
    raw_material_id = Column(String(36), ForeignKey("raw_materials.id"), nullable=False, index=True)
    quantity_required = Column(Float, nullable=False)
    unit = Column(String(32), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity_required > 0", name="ck_pcm_quantity_positive"),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# DEMAND & STOCK
# ═══════════════════════════════════════════════════════════════════════════════

class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    merchant_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(36), nullable=True, index=True)
    suborder_id = Column(String(64), nullable=True)
    product_config_id = Column(String(36), ForeignKey("product_configs.id"), nullable=False, index=True)
    quantity = Column(Float, nullable=False)
    fulfilled_quantity = Column(Float, default=0, nullable=False)
    status = Column(String(32), default="Created", nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class FinishedGood(Base):
    __tablename__ = "finished_goods"

    id = Column(String(36), primary_key=True, default=_uuid)
    merchant_id = Column(String(64), nullable=False, index=True)
    product_config_id = Column(String(36), ForeignKey("product_configs.id"), nullable=False, index=True)
    product_code = Column(String(128), nullable=True)
    current_stock = Column(Float, default=0, nullable=False)
    in_manufacturing = Column(Float, default=0, nullable=False)
    threshold = Column(Float, default=0, nullable=False)

    # Derived: written by live-demand aggregation
    required_quantity = Column(Float, default=0, nullable=False)

    last_updated = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("merchant_id", "product_config_id", name="uq_finished_goods_merchant_config"),
    )


class RawMaterial(Base):
    __tablename__ = "raw_materials"

    id = Column(String(36), primary_key=True, default=_uuid)
    merchant_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    type = Column(String(100), nullable=True)
    unit = Column(String(32), nullable=True)
    current_stock = Column(Float, default=0, nullable=False)
    in_procurement = Column(Float, default=0, nullable=False)
    in_manufacturing = Column(Float, default=0, nullable=False)  # reserved, already deducted from current_stock
    minimum_stock = Column(Float, default=0, nullable=False)

    # Derived: written only by the cascade
    required = Column(Float, default=0, nullable=False)

    last_updated = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# ═══════════════════════════════════════════════════════════════════════════════
# MANUFACTURING
# ═══════════════════════════════════════════════════════════════════════════════

class ManufacturingOrder(Base):
    __tablename__ = "manufacturing_orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    merchant_id = Column(String(64), nullable=False, index=True)
    order_number = Column(String(64), nullable=False)
    product_config_id = Column(String(36), ForeignKey("product_configs.id"), nullable=True, index=True)
    product_name = Column(String(255), nullable=True)
    quantity_required = Column(Float, nullable=False)
    priority = Column(String(16), default="medium", nullable=False)
    status = Column(String(16), default="pending", nullable=False, index=True)
    due_date = Column(Date, nullable=True)
    special_instructions = Column(Text, nullable=True)

    # Rework linkage
    parent_order_id = Column(String(36), ForeignKey("manufacturing_orders.id"), nullable=True, index=True)
    rework_source_step_id = Column(String(36), nullable=True)
    rework_quantity = Column(Float, nullable=True)
    rework_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("merchant_id", "order_number", name=ORDER_NUMBER_CONSTRAINT),
        CheckConstraint("quantity_required > 0", name="ck_manufacturing_orders_quantity_positive"),
    )


class MerchantStepConfig(Base):
    """Tenant-configurable production step sequence."""
    __tablename__ = "merchant_step_config"

    id = Column(String(36), primary_key=True, default=_uuid)
    merchant_id = Column(String(64), nullable=False, index=True)
    step_name = Column(String(100), nullable=False)
    step_order = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("merchant_id", "step_name", name="uq_merchant_step_config_name"),
    )


class StepInstance(Base):
    """One execution instance of a named step against a manufacturing order."""
    __tablename__ = "manufacturing_order_step_data"

    id = Column(String(36), primary_key=True, default=_uuid)
    merchant_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(36), ForeignKey("manufacturing_orders.id"), nullable=False, index=True)
    step_name = Column(String(100), nullable=False)
    instance_number = Column(Integer, nullable=False)

    # Lineage
    parent_instance_id = Column(String(36), ForeignKey("manufacturing_order_step_data.id"), nullable=True, index=True)
    origin_step_id = Column(String(36), ForeignKey("manufacturing_order_step_data.id"), nullable=True, index=True)
    is_rework = Column(Boolean, default=False, nullable=False)

    status = Column(String(32), default="in_progress", nullable=False)
    quantity_assigned = Column(Float, nullable=True)
    quantity_received = Column(Float, nullable=True)
    weight_assigned = Column(Float, nullable=True)
    weight_received = Column(Float, nullable=True)
    assigned_worker = Column(String(36), nullable=True)
    notes = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", "step_name", "instance_number", name="uq_step_data_instance"),
    )


class StepInstanceCounter(Base):
    """Monotonic instance counter per (order, step). Never decremented."""
    __tablename__ = "step_instance_counters"

    order_id = Column(String(36), primary_key=True)
    step_name = Column(String(100), primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


# ═══════════════════════════════════════════════════════════════════════════════
# CACHE METADATA
# ═══════════════════════════════════════════════════════════════════════════════

class CacheMetadataRecord(Base):
    """Advisory cache blob, one per merchant. Safe to delete at any time."""
    __tablename__ = "mrp_cache_metadata"

    merchant_id = Column(String(64), primary_key=True)
    payload = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

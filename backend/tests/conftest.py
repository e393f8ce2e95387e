"""
Fixtures comuns para todos os testes do backend.
"""
import pytest
import tempfile
import os
from pathlib import Path
from datetime import date

# Base de dados da app isolada dos dados locais
os.environ.setdefault(
    "MRP_DATABASE_URL",
    f"sqlite:///{Path(tempfile.gettempdir()) / 'requirements_cascade_test_app.db'}",
)

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.orm import sessionmaker

from requirements_cascade.models import (
    FinishedGood,
    ManufacturingOrder,
    MerchantStepConfig,
    MerchantUser,
    OrderItem,
    ProductConfig,
    ProductConfigMaterial,
    RawMaterial,
    build_engine,
    init_db,
)
from requirements_cascade.store import TenantStore

TENANT = "merchant-a"
OTHER_TENANT = "merchant-b"

STEP_SEQUENCE = {
    "Jhalai": 1,
    "Dhaai": 2,
    "Polish": 3,
    "Stone Setting": 4,
    "QC": 5,
}


@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """SQLite temporária com todas as tabelas criadas."""
    engine = build_engine(f"sqlite:///{tmp_path / 'requirements.db'}")
    init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return TenantStore(session_factory)


@pytest.fixture
def scenario(session_factory):
    """
    Cenário base:
    F: required_quantity=20, threshold=5, current_stock=10 -> shortfall 15
    R: minimum_stock=10, current_stock=5, BOM F->R = 2 -> required 30, shortfall 35
    """
    with session_factory() as session:
        config = ProductConfig(merchant_id=TENANT, product_code="RING-18K-7", category="Ring", size_value=7)
        session.add(config)
        session.flush()

        good = FinishedGood(
            merchant_id=TENANT,
            product_config_id=config.id,
            product_code=config.product_code,
            current_stock=10,
            in_manufacturing=0,
            threshold=5,
            required_quantity=20,
        )
        material = RawMaterial(
            merchant_id=TENANT, name="Gold 18K", type="Metal", unit="g",
            current_stock=5, in_procurement=0, minimum_stock=10,
        )
        session.add_all([good, material])
        session.flush()

        session.add(ProductConfigMaterial(
            merchant_id=TENANT, product_config_id=config.id, raw_material_id=material.id,
            quantity_required=2, unit="g",
        ))
        session.add(OrderItem(merchant_id=TENANT, product_config_id=config.id, quantity=20, status="Created"))
        session.add(MerchantUser(user_id="user-1", merchant_id=TENANT))
        for name, order in STEP_SEQUENCE.items():
            session.add(MerchantStepConfig(merchant_id=TENANT, step_name=name, step_order=order))
        session.commit()

        return {
            "tenant": TENANT,
            "config_id": config.id,
            "finished_good_id": good.id,
            "raw_material_id": material.id,
        }


@pytest.fixture
def primary_order(session_factory, scenario):
    """Ordem de fabrico MO000001 já existente."""
    with session_factory() as session:
        order = ManufacturingOrder(
            merchant_id=TENANT,
            order_number="MO000001",
            product_config_id=scenario["config_id"],
            product_name="Ring 18K",
            quantity_required=10,
            due_date=date(2026, 1, 31),
        )
        session.add(order)
        session.commit()
        return {"id": order.id, "order_number": order.order_number}


@pytest.fixture(scope="function")
def test_client(session_factory, scenario):
    """Cliente de teste FastAPI ligado à base temporária."""
    from fastapi.testclient import TestClient

    from api import app
    from requirements_cascade.api import get_service
    from requirements_cascade.order_numbers import OrderNumberAllocator
    from requirements_cascade.service import RequirementsPlanningService

    tenant_store = TenantStore(session_factory)
    service = RequirementsPlanningService(
        store=tenant_store,
        allocator=OrderNumberAllocator(tenant_store, sleep=lambda _: None),
    )
    app.dependency_overrides[get_service] = lambda: service
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()

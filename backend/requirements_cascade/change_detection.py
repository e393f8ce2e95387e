"""
Requirements Cascade - Change Detection
=======================================

Decides whether a tenant's cascade must be recomputed.

Two fingerprints are compared with the last stored ones:
- orders: live order items (Created / In Progress)
- stock: finished goods, raw materials and BOM entries

A time-based staleness bound forces a recalculation even when both match.
The metadata is advisory: losing it only costs one extra recalculation.

Canonical serialization: each row is a JSON object with sorted keys,
datetimes rendered as ISO-8601, rows sorted lexicographically and joined
with newlines, then hashed with SHA-256.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from requirements_cascade.config import Settings
from requirements_cascade.errors import RequirementsError
from requirements_cascade.models import utcnow
from requirements_cascade.records import LIVE_ORDER_STATUSES

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# FINGERPRINTING
# ═══════════════════════════════════════════════════════════════════════════════

def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Cannot serialize {type(value).__name__} for fingerprinting")


def canonical_row(row: Dict[str, Any]) -> str:
    return json.dumps(row, sort_keys=True, separators=(",", ":"), default=_json_default)


def fingerprint_rows(rows: Iterable[Dict[str, Any]]) -> str:
    """Order-independent SHA-256 digest of a set of rows."""
    serialized = sorted(canonical_row(row) for row in rows)
    return hashlib.sha256("\n".join(serialized).encode("utf-8")).hexdigest()


# ═══════════════════════════════════════════════════════════════════════════════
# METADATA
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class CacheMetadata:
    last_calculated_at: datetime
    orders_fingerprint: str
    stock_fingerprint: str

    def to_payload(self) -> Dict[str, str]:
        return {
            "lastCalculatedAt": self.last_calculated_at.isoformat(),
            "ordersFingerprint": self.orders_fingerprint,
            "stockFingerprint": self.stock_fingerprint,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CacheMetadata":
        """Raises KeyError, TypeError or ValueError on a malformed payload."""
        orders_fp = payload["ordersFingerprint"]
        stock_fp = payload["stockFingerprint"]
        if not isinstance(orders_fp, str) or not isinstance(stock_fp, str):
            raise TypeError("Fingerprints must be strings")
        last_calculated_at = datetime.fromisoformat(payload["lastCalculatedAt"])
        # Stored and compared as naive UTC
        if last_calculated_at.tzinfo is not None:
            last_calculated_at = last_calculated_at.astimezone(timezone.utc).replace(tzinfo=None)
        return cls(
            last_calculated_at=last_calculated_at,
            orders_fingerprint=orders_fp,
            stock_fingerprint=stock_fp,
        )


class InMemoryCacheMetadataStore:
    """Process-local metadata medium, for hosts without a durable key-value store."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = Lock()

    def read_cache_metadata(self, tenant: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            payload = self._data.get(tenant)
            return dict(payload) if payload is not None else None

    def write_cache_metadata(self, tenant: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self._data[tenant] = dict(payload)

    def delete_cache_metadata(self, tenant: str) -> None:
        with self._lock:
            self._data.pop(tenant, None)


@dataclass
class CacheDecision:
    should_recalculate: bool
    reasons: List[str] = field(default_factory=list)
    orders_fingerprint: str = ""
    stock_fingerprint: str = ""


# ═══════════════════════════════════════════════════════════════════════════════
# CACHE
# ═══════════════════════════════════════════════════════════════════════════════

class ChangeDetectionCache:
    """
    Fingerprint-based recalculation gate.

    Args:
        store: TenantStore (source of the fingerprinted rows)
        metadata_store: where the per-tenant metadata blob lives; defaults to
            the store's own mrp_cache_metadata table
        staleness: maximum age of a calculation before it is redone
    """

    def __init__(
        self,
        store,
        metadata_store=None,
        staleness: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.metadata_store = metadata_store or store
        self.staleness = staleness if staleness is not None else Settings.get().cache_staleness
        self._clock = clock

    def compute_fingerprints(self, tenant: str) -> Tuple[str, str]:
        items = self.store.query_order_items(tenant, LIVE_ORDER_STATUSES)
        orders_fp = fingerprint_rows(
            {
                "id": item.id,
                "product_config_id": item.product_config_id,
                "quantity": item.quantity,
                "fulfilled_quantity": item.fulfilled_quantity,
                "status": item.status,
                "updated_at": item.updated_at,
            }
            for item in items
        )

        stock_rows: List[Dict[str, Any]] = []
        for good in self.store.query_finished_goods(tenant):
            stock_rows.append({
                "kind": "finished_good",
                "id": good.id,
                "product_config_id": good.product_config_id,
                "current_stock": good.current_stock,
                "in_manufacturing": good.in_manufacturing,
                "threshold": good.threshold,
                "required_quantity": good.required_quantity,
                "updated_at": good.updated_at,
            })
        for material in self.store.query_raw_materials(tenant):
            stock_rows.append({
                "kind": "raw_material",
                "id": material.id,
                "current_stock": material.current_stock,
                "in_procurement": material.in_procurement,
                "minimum_stock": material.minimum_stock,
                "updated_at": material.updated_at,
            })
        for entry in self.store.query_bom_entries(tenant):
            stock_rows.append({
                "kind": "bom",
                "product_config_id": entry.product_config_id,
                "raw_material_id": entry.raw_material_id,
                "quantity_required": entry.quantity_required,
            })
        return orders_fp, fingerprint_rows(stock_rows)

    def load_metadata(self, tenant: str) -> Optional[CacheMetadata]:
        payload = self.metadata_store.read_cache_metadata(tenant)
        if payload is None:
            return None
        try:
            return CacheMetadata.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(f"Discarding unreadable cache metadata for {tenant}: {exc}")
            return None

    def check(self, tenant: str) -> CacheDecision:
        orders_fp, stock_fp = self.compute_fingerprints(tenant)
        decision = CacheDecision(False, [], orders_fp, stock_fp)

        metadata = self.load_metadata(tenant)
        if metadata is None:
            decision.reasons.append("no_metadata")
        else:
            if metadata.orders_fingerprint != orders_fp:
                decision.reasons.append("orders_changed")
            if metadata.stock_fingerprint != stock_fp:
                decision.reasons.append("stock_changed")
            if self._clock() - metadata.last_calculated_at > self.staleness:
                decision.reasons.append("expired")

        decision.should_recalculate = bool(decision.reasons)
        if decision.should_recalculate:
            logger.info(f"Recalculation needed for {tenant}: {', '.join(decision.reasons)}")
        else:
            logger.info(f"Cache hit for {tenant}: inputs unchanged")
        return decision

    def should_recalculate(self, tenant: str) -> bool:
        return self.check(tenant).should_recalculate

    def update_cache_metadata(self, tenant: str) -> Optional[CacheMetadata]:
        """
        Record fresh fingerprints after a recalculation.

        A failed write is logged and ignored; the next check simply recalculates.
        """
        orders_fp, stock_fp = self.compute_fingerprints(tenant)
        metadata = CacheMetadata(self._clock(), orders_fp, stock_fp)
        try:
            self.metadata_store.write_cache_metadata(tenant, metadata.to_payload())
        except (RequirementsError, SQLAlchemyError) as exc:
            logger.warning(f"Failed to write cache metadata for {tenant}: {exc}")
            return None
        return metadata

    def force_invalidate(self, tenant: str) -> None:
        self.metadata_store.delete_cache_metadata(tenant)
        logger.info(f"Cache metadata invalidated for {tenant}")

"""
Requirements Cascade - Order Number Allocator
=============================================

Optimistic allocation of human-readable manufacturing order numbers.

Families:
- PRIMARY: "MO" + zero-padded integer, e.g. MO000042
- REWORK:  "<parent order number>-R<n>", e.g. MO000042-R1

There is no central sequence. Each attempt scans the tenant's existing
numbers, probes the candidate and inserts; the store's unique constraint
on (merchant_id, order_number) decides races. Gaps in the numbering are
acceptable, duplicates are not.
"""

from __future__ import annotations

import logging
import random
import re
import time
from enum import Enum
from typing import Callable, Iterable, Optional, Tuple, TypeVar

from requirements_cascade.config import Settings
from requirements_cascade.errors import AllocationExhausted, UniqueConstraintViolation
from requirements_cascade.records import ManufacturingOrderRecord, NewManufacturingOrder

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OrderNumberKind(str, Enum):
    PRIMARY = "primary"
    REWORK = "rework"


# ═══════════════════════════════════════════════════════════════════════════════
# PURE HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def next_primary_number(existing: Iterable[str], prefix: str = "MO", width: int = 6) -> str:
    """
    Next primary number after the highest existing one.

    Only exact `<prefix><digits>` numbers count; anything carrying a rework
    suffix is ignored.
    """
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    highest = 0
    for number in existing:
        match = pattern.match(number)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{prefix}{highest + 1:0{width}d}"


def next_rework_number(existing: Iterable[str], parent_order_number: str, separator: str = "-R") -> str:
    pattern = re.compile(rf"^{re.escape(parent_order_number)}{re.escape(separator)}(\d+)$")
    highest = 0
    for number in existing:
        match = pattern.match(number)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{parent_order_number}{separator}{highest + 1}"


def backoff_delay(
    attempt: int,
    base_delay: float = 0.05,
    max_delay: float = 2.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff with jitter: 2^attempt * base + U(0, base), capped."""
    return min(max_delay, (2 ** attempt) * base_delay + rng() * base_delay)


# ═══════════════════════════════════════════════════════════════════════════════
# ALLOCATOR
# ═══════════════════════════════════════════════════════════════════════════════

class OrderNumberAllocator:
    """
    Scan -> probe -> insert, retried with backoff on collisions.

    Only uniqueness collisions are retried. Every other error, including
    TransientStoreError, propagates on the attempt where it happened.
    """

    def __init__(
        self,
        store,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ):
        settings = Settings.get()
        self.store = store
        self.max_attempts = max_attempts or settings.allocator_max_attempts
        self.base_delay = settings.allocator_base_delay if base_delay is None else base_delay
        self.max_delay = settings.allocator_max_delay if max_delay is None else max_delay
        self.prefix = settings.order_prefix
        self.width = settings.order_number_width
        self.rework_separator = settings.rework_separator
        self._sleep = sleep
        self._rng = rng

    def candidate(self, tenant: str, kind: OrderNumberKind, parent_order_number: Optional[str] = None) -> str:
        if kind == OrderNumberKind.PRIMARY:
            existing = self.store.list_order_numbers(tenant, self.prefix)
            return next_primary_number(existing, self.prefix, self.width)
        if not parent_order_number:
            raise ValueError("A rework order number needs the parent order number")
        existing = self.store.list_order_numbers(tenant, f"{parent_order_number}{self.rework_separator}")
        return next_rework_number(existing, parent_order_number, self.rework_separator)

    def _allocate(
        self,
        tenant: str,
        kind: OrderNumberKind,
        insert: Callable[[str], T],
        parent_order_number: Optional[str],
    ) -> Tuple[str, T]:
        last_candidate = None
        for attempt in range(1, self.max_attempts + 1):
            candidate = self.candidate(tenant, kind, parent_order_number)
            last_candidate = candidate

            if self.store.find_order_by_number(tenant, candidate) is not None:
                outcome = "already taken"
            else:
                try:
                    result = insert(candidate)
                except UniqueConstraintViolation:
                    outcome = "lost insert race"
                else:
                    logger.info(f"Allocated {kind.value} order number {candidate} for {tenant} (attempt {attempt})")
                    return candidate, result

            if attempt < self.max_attempts:
                delay = backoff_delay(attempt, self.base_delay, self.max_delay, self._rng)
                logger.warning(
                    f"Order number {candidate} {outcome} for {tenant}, "
                    f"retrying in {delay:.3f}s (attempt {attempt}/{self.max_attempts})"
                )
                self._sleep(delay)

        raise AllocationExhausted(self.max_attempts, last_candidate)

    def allocate_order_number(
        self,
        tenant: str,
        kind: OrderNumberKind,
        insert: Callable[[str], object],
        parent_order_number: Optional[str] = None,
    ) -> str:
        """
        Allocate a number and insert with it via `insert(candidate)`.

        `insert` must raise UniqueConstraintViolation when the number is taken.
        """
        number, _ = self._allocate(tenant, kind, insert, parent_order_number)
        return number

    def create_order(
        self,
        tenant: str,
        payload: NewManufacturingOrder,
        kind: OrderNumberKind = OrderNumberKind.PRIMARY,
        parent_order_number: Optional[str] = None,
    ) -> ManufacturingOrderRecord:
        _, order = self._allocate(
            tenant,
            kind,
            lambda number: self.store.insert_manufacturing_order(tenant, number, payload),
            parent_order_number,
        )
        return order

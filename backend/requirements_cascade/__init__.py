"""
════════════════════════════════════════════════════════════════════════════════
REQUIREMENTS CASCADE Package - MRP core for made-to-order manufacturing
════════════════════════════════════════════════════════════════════════════════

Modules:
- models: SQLAlchemy tables (tenant-scoped)
- store: TenantStore, the only component that talks to the database
- cascade: finished good -> raw material requirements and shortfall
- change_detection: fingerprint cache deciding when to recalculate
- order_numbers: optimistic MO / rework number allocation
- lineage: step instances, rework propagation, lineage edges
- service: RequirementsPlanningService composing the above
- api: REST API
"""

"""Schema models, target derivation, diffing, risk classification and introspection."""

from sqlsync.schema.comparator import DiffOptions, diff_schema
from sqlsync.schema.introspector import SchemaIntrospector, load_schema_snapshot
from sqlsync.schema.models import (
    ChangeType,
    DatabaseSchema,
    DiscoveredEntity,
    EntityDiscoveryResult,
    ObjectType,
    RiskAssessment,
    RiskLevel,
    SchemaChange,
)
from sqlsync.schema.risk import assess_risk, classify_changes

__all__ = [
    "DiffOptions",
    "diff_schema",
    "SchemaIntrospector",
    "load_schema_snapshot",
    "ChangeType",
    "DatabaseSchema",
    "DiscoveredEntity",
    "EntityDiscoveryResult",
    "ObjectType",
    "RiskAssessment",
    "RiskLevel",
    "SchemaChange",
    "assess_risk",
    "classify_changes",
]

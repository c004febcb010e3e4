"""Risk classification of schema changes.

A base rule table keyed by ``(ChangeType, ObjectType)`` gives every change a
starting level; an explicit escalation pass then inspects change properties
(type narrowing, nullability tightening, clustered indexes, foreign keys).
Unknown combinations default to Warning.

Usage:
    from sqlsync.schema.risk import classify_changes, assess_risk

    classify_changes(changes)          # annotates risk_level / can_rollback
    assessment = assess_risk(changes)
    if assessment.requires_dual_approval:
        ...
"""

from collections.abc import Callable
from dataclasses import dataclass

from sqlsync.schema.models import (
    ChangeType,
    ObjectType,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
    SchemaChange,
)


BASE_RISK: dict[tuple[ChangeType, ObjectType], RiskLevel] = {
    (ChangeType.CREATE, ObjectType.TABLE): RiskLevel.SAFE,
    (ChangeType.CREATE, ObjectType.COLUMN): RiskLevel.SAFE,
    (ChangeType.CREATE, ObjectType.INDEX): RiskLevel.SAFE,
    (ChangeType.CREATE, ObjectType.CONSTRAINT): RiskLevel.WARNING,
    (ChangeType.CREATE, ObjectType.VIEW): RiskLevel.SAFE,
    (ChangeType.CREATE, ObjectType.PROCEDURE): RiskLevel.SAFE,
    (ChangeType.CREATE, ObjectType.FUNCTION): RiskLevel.SAFE,
    (ChangeType.ALTER, ObjectType.COLUMN): RiskLevel.SAFE,
    (ChangeType.DROP, ObjectType.TABLE): RiskLevel.RISKY,
    (ChangeType.DROP, ObjectType.COLUMN): RiskLevel.RISKY,
    (ChangeType.DROP, ObjectType.INDEX): RiskLevel.SAFE,
    (ChangeType.DROP, ObjectType.CONSTRAINT): RiskLevel.SAFE,
    (ChangeType.DROP, ObjectType.VIEW): RiskLevel.WARNING,
    (ChangeType.DROP, ObjectType.PROCEDURE): RiskLevel.WARNING,
    (ChangeType.DROP, ObjectType.FUNCTION): RiskLevel.WARNING,
}

DEFAULT_RISK = RiskLevel.WARNING


@dataclass(frozen=True)
class RiskRule:
    """A named rule that raises a change to ``level`` when ``applies`` holds."""

    name: str
    description: str
    category: str
    level: RiskLevel
    applies: Callable[[SchemaChange], bool]


def _is(change_type: ChangeType, object_type: ObjectType) -> Callable[[SchemaChange], bool]:
    return lambda c: c.change_type == change_type and c.object_type == object_type


def _alter_kind(change: SchemaChange) -> str:
    if change.change_type != ChangeType.ALTER or change.object_type != ObjectType.COLUMN:
        return ""
    return change.properties.get("alter_kind", "")


RULES: tuple[RiskRule, ...] = (
    RiskRule(
        name="table_drop",
        description="Dropping a table destroys its data",
        category="data_loss",
        level=RiskLevel.RISKY,
        applies=_is(ChangeType.DROP, ObjectType.TABLE),
    ),
    RiskRule(
        name="column_drop",
        description="Dropping a column destroys its data",
        category="data_loss",
        level=RiskLevel.RISKY,
        applies=_is(ChangeType.DROP, ObjectType.COLUMN),
    ),
    RiskRule(
        name="type_narrowing",
        description="Narrowing or converting a column type can truncate or reject data",
        category="data_loss",
        level=RiskLevel.RISKY,
        applies=lambda c: _alter_kind(c) == "data_type" and not c.properties.get("widening", False),
    ),
    RiskRule(
        name="type_widening",
        description="Widening a column type rewrites the column",
        category="schema_change",
        level=RiskLevel.WARNING,
        applies=lambda c: _alter_kind(c) == "data_type" and c.properties.get("widening", False),
    ),
    RiskRule(
        name="nullability_tightening",
        description="Making a column NOT NULL fails on existing NULL values",
        category="constraint_validation",
        level=RiskLevel.WARNING,
        applies=lambda c: _alter_kind(c) == "nullability" and c.properties.get("direction") == "tighten",
    ),
    RiskRule(
        name="constraint_addition",
        description="Adding a constraint can reject existing rows",
        category="constraint_validation",
        level=RiskLevel.WARNING,
        applies=_is(ChangeType.CREATE, ObjectType.CONSTRAINT),
    ),
    RiskRule(
        name="clustered_index_drop",
        description="Dropping a clustered index rebuilds the table",
        category="performance",
        level=RiskLevel.WARNING,
        applies=lambda c: (
            c.change_type == ChangeType.DROP
            and c.object_type == ObjectType.INDEX
            and c.properties.get("is_clustered", False)
        ),
    ),
    RiskRule(
        name="foreign_key_drop",
        description="Dropping a foreign key removes referential integrity",
        category="integrity",
        level=RiskLevel.WARNING,
        applies=lambda c: (
            c.change_type == ChangeType.DROP and c.properties.get("constraint_type") == "FK"
        ),
    ),
    RiskRule(
        name="dependent_object_drop",
        description="Dropping a view, procedure or function breaks its callers",
        category="dependency",
        level=RiskLevel.WARNING,
        applies=lambda c: (
            c.change_type == ChangeType.DROP
            and c.object_type in (ObjectType.VIEW, ObjectType.PROCEDURE, ObjectType.FUNCTION)
        ),
    ),
)


def _can_rollback(change: SchemaChange) -> bool:
    """Whether a reverse statement can restore the previous state."""
    if change.change_type == ChangeType.DROP and change.object_type in (
        ObjectType.TABLE, ObjectType.COLUMN
    ):
        return False
    if _alter_kind(change) == "data_type" and change.properties.get("potential_data_loss", False):
        return False
    if change.change_type == ChangeType.DROP and change.object_type in (
        ObjectType.VIEW, ObjectType.PROCEDURE, ObjectType.FUNCTION
    ):
        return bool(change.properties.get("definition"))
    return True


def matching_rules(change: SchemaChange) -> list[RiskRule]:
    """All escalation rules that apply to a change."""
    return [rule for rule in RULES if rule.applies(change)]


def classify_change(change: SchemaChange) -> RiskLevel:
    """Classify one change and annotate it in place.

    Returns:
        The assigned risk level.
    """
    level = BASE_RISK.get((change.change_type, change.object_type), DEFAULT_RISK)
    for rule in matching_rules(change):
        level = max(level, rule.level)
    change.risk_level = level
    change.can_rollback = _can_rollback(change)
    return level


def classify_changes(changes: list[SchemaChange]) -> list[SchemaChange]:
    """Classify every change in place and return the same list."""
    for change in changes:
        classify_change(change)
    return changes


def assess_risk(changes: list[SchemaChange]) -> RiskAssessment:
    """Aggregate the risk of a classified change list.

    Example:
        >>> assessment = assess_risk(classify_changes(changes))
        >>> assessment.overall_risk_level
        <RiskLevel.RISKY: 2>
    """
    assessment = RiskAssessment()
    factors: dict[str, RiskFactor] = {}

    for change in changes:
        if change.risk_level == RiskLevel.SAFE:
            assessment.safe_operations += 1
        elif change.risk_level == RiskLevel.WARNING:
            assessment.warning_operations += 1
        else:
            assessment.risky_operations += 1
        assessment.overall_risk_level = max(assessment.overall_risk_level, change.risk_level)

        for rule in matching_rules(change):
            factor = factors.setdefault(
                rule.name,
                RiskFactor(
                    name=rule.name,
                    description=rule.description,
                    risk_level=rule.level,
                    category=rule.category,
                ),
            )
            factor.affected_objects.append(change.key)

        if not change.can_rollback:
            factor = factors.setdefault(
                "non_rollback",
                RiskFactor(
                    name="non_rollback",
                    description="No rollback statement can restore the previous state",
                    risk_level=change.risk_level,
                    category="rollback",
                ),
            )
            factor.risk_level = max(factor.risk_level, change.risk_level)
            factor.affected_objects.append(change.key)

    assessment.requires_approval = assessment.overall_risk_level > RiskLevel.SAFE
    assessment.requires_dual_approval = assessment.risky_operations > 0
    assessment.risk_factors = list(factors.values())
    return assessment

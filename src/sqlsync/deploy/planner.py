"""Deployment planning -- order changes into gated phases.

Changes are topologically sorted over an explicit dependency graph, then
bucketed into the slots of a phase catalog.  Every phase holds operations
of a single risk level, so approval gates apply to whole phases.

Two catalogs exist:

- ``PHASE_CATALOG`` (phased mode): 29 slots.  A pre-deployment validation
  and the backup checkpoint come first; then dependent objects,
  constraints, indexes, columns and tables are dropped, tables and columns
  created, columns altered by kind, and constraints, indexes, foreign keys
  and dependent objects created; a post-deployment validation comes last.
- ``SIMPLE_CATALOG``: drops, then everything else, then validation.

The framing slots never hold schema changes.  Their phases are kept in
``pre_deployment_phases``/``post_deployment_phases`` and only exist when
the plan changes something.

Usage:
    from sqlsync.deploy.planner import plan_deployment

    plan = plan_deployment(changes, config.deployment, "postgresql", "public")
    for phase in plan.phases:
        print(phase.phase_number, phase.name, phase.risk_level.label)
"""

import heapq
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlsync.config.models import DeploymentConfiguration
from sqlsync.deploy.models import (
    DeploymentOperation,
    DeploymentPhase,
    DeploymentPlan,
    OperationKind,
)
from sqlsync.deploy.sql import SqlGenerator
from sqlsync.errors import DependencyCycleError, SchemaValidationError
from sqlsync.schema.models import ChangeType, ObjectType, RiskLevel, SchemaChange

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Phase catalog
# ------------------------------------------------------------------


@dataclass(frozen=True)
class PhaseSlot:
    """A catalog entry: which changes a phase built from this slot holds.

    ``stage`` is ``"deploy"`` for slots that hold schema changes.  The
    framing slots never hold changes.  ``"pre"`` and ``"backup"`` slots run
    before the first change; a ``"post"`` slot runs after the last one.
    """

    number: int
    name: str
    description: str
    matches: Callable[[SchemaChange], bool]
    stage: str = "deploy"


def _op(change_type: ChangeType, object_type: ObjectType, **props) -> Callable[[SchemaChange], bool]:
    def matches(change: SchemaChange) -> bool:
        if change.change_type != change_type or change.object_type != object_type:
            return False
        return all(change.properties.get(k, False) == v for k, v in props.items())

    return matches


def _constraint(change_type: ChangeType, *kinds: str) -> Callable[[SchemaChange], bool]:
    return lambda c: (
        c.change_type == change_type
        and c.object_type == ObjectType.CONSTRAINT
        and c.properties.get("constraint_type") in kinds
    )


def _alter_column(kind: str, **props) -> Callable[[SchemaChange], bool]:
    return _op(ChangeType.ALTER, ObjectType.COLUMN, alter_kind=kind, **props)


def _create_or_alter(*object_types: ObjectType) -> Callable[[SchemaChange], bool]:
    return lambda c: (
        c.change_type in (ChangeType.CREATE, ChangeType.ALTER) and c.object_type in object_types
    )


def _never(change: SchemaChange) -> bool:
    return False


PHASE_CATALOG: tuple[PhaseSlot, ...] = (
    PhaseSlot(1, "Pre-deployment Validation", "Check server version and current database",
              _never, stage="pre"),
    PhaseSlot(2, "Database Backup", "Export affected tables to a checkpoint file",
              _never, stage="backup"),
    PhaseSlot(3, "Drop Views", "Drop views that are removed or redefined",
              _op(ChangeType.DROP, ObjectType.VIEW)),
    PhaseSlot(4, "Drop Procedures", "Drop stored procedures",
              _op(ChangeType.DROP, ObjectType.PROCEDURE)),
    PhaseSlot(5, "Drop Functions", "Drop functions",
              _op(ChangeType.DROP, ObjectType.FUNCTION)),
    PhaseSlot(6, "Drop Foreign Keys", "Drop foreign key constraints",
              _constraint(ChangeType.DROP, "FK")),
    PhaseSlot(7, "Drop Check Constraints", "Drop check constraints",
              _constraint(ChangeType.DROP, "CK")),
    PhaseSlot(8, "Drop Unique and Primary Keys", "Drop unique and primary key constraints",
              _constraint(ChangeType.DROP, "UQ", "PK")),
    PhaseSlot(9, "Drop Non-Clustered Indexes", "Drop non-clustered indexes",
              _op(ChangeType.DROP, ObjectType.INDEX, is_clustered=False)),
    PhaseSlot(10, "Drop Clustered Indexes", "Drop clustered indexes",
              _op(ChangeType.DROP, ObjectType.INDEX, is_clustered=True)),
    PhaseSlot(11, "Drop Columns", "Drop columns (data loss)",
              _op(ChangeType.DROP, ObjectType.COLUMN)),
    PhaseSlot(12, "Drop Tables", "Drop tables (data loss)",
              _op(ChangeType.DROP, ObjectType.TABLE)),
    PhaseSlot(13, "Create Tables and Columns", "Create tables and add columns",
              lambda c: c.change_type == ChangeType.CREATE
              and c.object_type in (ObjectType.TABLE, ObjectType.COLUMN)),
    PhaseSlot(14, "Widen Column Types", "Alter column types without data loss",
              _alter_column("data_type", widening=True)),
    PhaseSlot(15, "Convert Column Types", "Narrow or convert column types",
              _alter_column("data_type", widening=False)),
    PhaseSlot(16, "Relax Column Nullability", "Make columns nullable",
              _alter_column("nullability", direction="relax")),
    PhaseSlot(17, "Alter Column Defaults", "Change column default values",
              _alter_column("default")),
    PhaseSlot(18, "Tighten Column Nullability", "Make columns NOT NULL",
              _alter_column("nullability", direction="tighten")),
    PhaseSlot(19, "Create Primary Keys", "Add primary key constraints",
              _constraint(ChangeType.CREATE, "PK")),
    PhaseSlot(20, "Create Unique Constraints", "Add unique constraints",
              _constraint(ChangeType.CREATE, "UQ")),
    PhaseSlot(21, "Create Check Constraints", "Add check constraints",
              _constraint(ChangeType.CREATE, "CK")),
    PhaseSlot(22, "Create Clustered Indexes", "Create clustered indexes",
              _op(ChangeType.CREATE, ObjectType.INDEX, is_clustered=True)),
    PhaseSlot(23, "Create Unique Indexes", "Create unique non-clustered indexes",
              _op(ChangeType.CREATE, ObjectType.INDEX, is_clustered=False, is_unique=True)),
    PhaseSlot(24, "Create Non-Clustered Indexes", "Create non-clustered indexes",
              _op(ChangeType.CREATE, ObjectType.INDEX, is_clustered=False, is_unique=False)),
    PhaseSlot(25, "Create Foreign Keys", "Add foreign key constraints",
              _constraint(ChangeType.CREATE, "FK")),
    PhaseSlot(26, "Create or Alter Views", "Create and redefine views",
              _create_or_alter(ObjectType.VIEW)),
    PhaseSlot(27, "Create or Alter Procedures and Functions",
              "Create and redefine stored procedures and functions",
              _create_or_alter(ObjectType.PROCEDURE, ObjectType.FUNCTION)),
    PhaseSlot(28, "Other Changes", "Changes outside the standard phases",
              lambda c: True),
    PhaseSlot(29, "Post-deployment Validation", "Check the deployed table count",
              _never, stage="post"),
)

MAX_PHASES = len(PHASE_CATALOG)

SIMPLE_CATALOG: tuple[PhaseSlot, ...] = (
    PhaseSlot(1, "Drop Operations", "Drop removed objects",
              lambda c: c.change_type == ChangeType.DROP),
    PhaseSlot(2, "Structural Changes", "Create and alter objects",
              lambda c: True),
    PhaseSlot(3, "Validation", "Check the deployed table count",
              _never, stage="post"),
)


def slot_for(change: SchemaChange, catalog: tuple[PhaseSlot, ...] = PHASE_CATALOG) -> PhaseSlot:
    """First catalog slot that accepts the change.

    Raises:
        SchemaValidationError: If no slot accepts it.
    """
    for slot in catalog:
        if slot.matches(change):
            return slot
    raise SchemaValidationError(
        f"No deployment phase accepts {change.key}",
        object_name=change.object_name,
        schema_name=change.schema_name or None,
    )


# ------------------------------------------------------------------
# Dependency graph
# ------------------------------------------------------------------


@dataclass
class DependencyGraph:
    """Directed graph over change keys; an edge points from prerequisite to dependent."""

    changes: dict[str, SchemaChange] = field(default_factory=dict)
    order: dict[str, int] = field(default_factory=dict)
    dependents: dict[str, list[str]] = field(default_factory=dict)
    in_degree: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_changes(cls, changes: list[SchemaChange]) -> "DependencyGraph":
        """Build the graph.

        Dependencies on keys that are not in ``changes`` are already
        satisfied and add no edge.

        Raises:
            SchemaValidationError: If two changes share a key.
        """
        graph = cls()
        for position, change in enumerate(changes):
            key = change.key
            if key in graph.changes:
                raise SchemaValidationError(
                    f"Duplicate change {key}",
                    object_name=change.object_name,
                    schema_name=change.schema_name or None,
                )
            graph.changes[key] = change
            graph.order[key] = position
            graph.dependents[key] = []
            graph.in_degree[key] = 0

        for key, change in graph.changes.items():
            for dependency in change.dependencies:
                if dependency in graph.changes:
                    graph.dependents[dependency].append(key)
                    graph.in_degree[key] += 1
        return graph

    def topological_order(self) -> list[SchemaChange]:
        """Kahn's algorithm, ties broken by original change order.

        Raises:
            DependencyCycleError: If the graph has a cycle.
        """
        in_degree = dict(self.in_degree)
        ready = [(self.order[k], k) for k, d in in_degree.items() if d == 0]
        heapq.heapify(ready)
        ordered: list[SchemaChange] = []

        while ready:
            _, key = heapq.heappop(ready)
            ordered.append(self.changes[key])
            for dependent in self.dependents[key]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (self.order[dependent], dependent))

        if len(ordered) != len(self.changes):
            blocked = {k for k, d in in_degree.items() if d > 0}
            raise DependencyCycleError(self._find_cycle(blocked))
        return ordered

    def _find_cycle(self, blocked: set[str]) -> list[str]:
        """Return the keys of one cycle among ``blocked`` nodes."""
        visiting: list[str] = []
        visited: set[str] = set()

        def visit(key: str) -> list[str] | None:
            if key in visiting:
                return visiting[visiting.index(key):] + [key]
            if key in visited:
                return None
            visiting.append(key)
            for dependency in self.changes[key].dependencies:
                if dependency in blocked:
                    cycle = visit(dependency)
                    if cycle:
                        return cycle
            visiting.pop()
            visited.add(key)
            return None

        for key in sorted(blocked, key=self.order.__getitem__):
            cycle = visit(key)
            if cycle:
                return cycle
        return sorted(blocked, key=self.order.__getitem__)


# ------------------------------------------------------------------
# Phase construction
# ------------------------------------------------------------------


def _split_by_risk(operations: list[DeploymentOperation]) -> list[list[DeploymentOperation]]:
    """Split a slot's operations into risk-homogeneous groups.

    Groups by ascending risk when that keeps every in-slot dependency
    ahead of its dependent; otherwise falls back to consecutive runs of
    equal risk, which always preserve the sorted order.
    """
    levels = sorted({op.risk_level for op in operations})
    if len(levels) <= 1:
        return [operations]

    grouped = [[op for op in operations if op.risk_level == level] for level in levels]
    flattened = [op for group in grouped for op in group]
    position = {op.change_key: i for i, op in enumerate(flattened)}
    if all(
        position.get(dep, -1) < position[op.change_key]
        for op in flattened
        for dep in op.dependencies
    ):
        return grouped

    runs: list[list[DeploymentOperation]] = []
    for op in operations:
        if runs and runs[-1][0].risk_level == op.risk_level:
            runs[-1].append(op)
        else:
            runs.append([op])
    return runs


def _build_phase(slot: PhaseSlot, operations: list[DeploymentOperation], split: bool) -> DeploymentPhase:
    risk = max(op.risk_level for op in operations)
    description = slot.description
    if split:
        description = f"{description} ({risk.label} operations)"
    return DeploymentPhase(
        phase_number=0,
        slot=slot.number,
        name=slot.name,
        description=description,
        risk_level=risk,
        requires_approval=risk > RiskLevel.SAFE,
        requires_dual_approval=risk == RiskLevel.RISKY,
        can_rollback=all(op.can_rollback for op in operations),
        operations=operations,
    )


def _framing_phases(
    catalog: tuple[PhaseSlot, ...], generator: SqlGenerator, backup: bool
) -> tuple[list[DeploymentPhase], list[DeploymentPhase]]:
    """Pre- and post-deployment phases of ``catalog``; none change the schema."""
    pre: list[DeploymentPhase] = []
    post: list[DeploymentPhase] = []
    for slot in catalog:
        if slot.stage == "pre":
            operation = DeploymentOperation(
                change_key="VALIDATION:pre_deployment",
                kind=OperationKind.VALIDATION,
                object_name="pre_deployment",
                description=slot.description,
                sql_command=generator.environment_check(),
                properties={"validation_type": "pre_deployment"},
            )
        elif slot.stage == "backup" and backup:
            operation = DeploymentOperation(
                change_key="BACKUP:checkpoint",
                kind=OperationKind.BACKUP,
                object_name="checkpoint",
                description=slot.description,
                sql_command="",
            )
        elif slot.stage == "post":
            operation = DeploymentOperation(
                change_key="VALIDATION:post_deployment",
                kind=OperationKind.VALIDATION,
                object_name="post_deployment",
                description=slot.description,
                sql_command=generator.post_deployment_check(),
                properties={"validation_type": "post_deployment"},
            )
        else:
            continue

        phase = DeploymentPhase(
            phase_number=0,
            slot=slot.number,
            name=slot.name,
            description=slot.description,
            operations=[operation],
        )
        (post if slot.stage == "post" else pre).append(phase)
    return pre, post


def _apply_custom_order(
    phases: list[DeploymentPhase], order: list[int], catalog: tuple[PhaseSlot, ...]
) -> list[DeploymentPhase]:
    valid = {slot.number for slot in catalog}
    invalid = [n for n in order if n not in valid]
    if invalid:
        raise SchemaValidationError(
            f"Invalid phase numbers in custom phase order: {', '.join(map(str, invalid))}"
        )
    rank = {number: i for i, number in enumerate(dict.fromkeys(order))}
    unspecified = len(rank)
    # sorted() is stable, so split phases of one slot keep their relative order
    return sorted(phases, key=lambda p: rank.get(p.slot, unspecified))


def validate_plan(plan: DeploymentPlan) -> None:
    """Check the ordering guarantees of a plan.

    Raises:
        SchemaValidationError: If an operation runs before one of its
            dependencies, depends on a skipped operation, a phase mixes
            risk levels, or a phased plan exceeds ``MAX_PHASES``.
    """
    position: dict[str, tuple[int, int]] = {}
    for phase_index, phase in enumerate(plan.phases):
        for op_index, op in enumerate(phase.operations):
            position[op.change_key] = (phase_index, op_index)
    skipped = {op.change_key for phase in plan.skipped_phases for op in phase.operations}

    for phase in plan.phases:
        levels = {op.risk_level for op in phase.operations}
        if len(levels) != 1 or phase.risk_level not in levels:
            raise SchemaValidationError(
                f"Phase '{phase.name}' mixes risk levels", phase_number=phase.phase_number
            )
        for op in phase.operations:
            for dependency in op.dependencies:
                if dependency in skipped:
                    raise SchemaValidationError(
                        f"{op.change_key} depends on skipped operation {dependency}",
                        object_name=op.object_name,
                        schema_name=op.schema_name or None,
                        phase_number=phase.phase_number,
                    )
                if dependency in position and position[dependency] >= position[op.change_key]:
                    raise SchemaValidationError(
                        f"{op.change_key} is ordered before its dependency {dependency}",
                        object_name=op.object_name,
                        schema_name=op.schema_name or None,
                        phase_number=phase.phase_number,
                    )

    total = len(plan.ordered_phases())
    if plan.phased_deployment and total > MAX_PHASES:
        raise SchemaValidationError(
            f"Plan has {total} phases, more than the maximum of {MAX_PHASES}"
        )


def plan_deployment(
    changes: list[SchemaChange],
    config: DeploymentConfiguration | None = None,
    provider: str = "postgresql",
    default_schema: str = "",
    environment: str = "",
    backup: bool = False,
) -> DeploymentPlan:
    """Turn classified changes into an ordered, gated deployment plan.

    Args:
        changes: Changes annotated by the risk classifier.
        config: Phase settings (phased mode, skipping Warning phases,
            custom phase order).
        provider: Target provider, used for SQL generation.
        default_schema: Schema left unqualified in generated SQL.
        environment: Environment label recorded in plan metadata.
        backup: Include the backup checkpoint phase (phased mode only).

    Returns:
        A validated ``DeploymentPlan``.  Empty input yields a plan with no
        phases, not even the framing ones.

    Raises:
        DependencyCycleError: If the changes depend on each other cyclically.
        SchemaValidationError: If SQL cannot be generated or the plan
            violates its ordering guarantees.

    Example:
        plan = plan_deployment(changes, DeploymentConfiguration(), "sqlserver", "dbo")
        if plan.requires_dual_approval:
            ...
    """
    config = config or DeploymentConfiguration()
    catalog = PHASE_CATALOG if config.enable_phased_deployment else SIMPLE_CATALOG
    generator = SqlGenerator(provider, default_schema)

    ordered = DependencyGraph.from_changes(changes).topological_order()

    by_slot: dict[int, list[DeploymentOperation]] = {}
    slots = {slot.number: slot for slot in catalog}
    for change in ordered:
        sql, rollback = generator.statements(change)
        operation = DeploymentOperation(
            change_key=change.key,
            change_type=change.change_type,
            object_type=change.object_type,
            object_name=change.object_name,
            schema_name=change.schema_name,
            table_name=change.table_name,
            description=change.description,
            sql_command=sql,
            rollback_command=rollback,
            risk_level=change.risk_level,
            can_rollback=change.can_rollback and rollback is not None,
            dependencies=list(change.dependencies),
            properties=dict(change.properties),
        )
        by_slot.setdefault(slot_for(change, catalog).number, []).append(operation)

    phases: list[DeploymentPhase] = []
    for number in sorted(by_slot):
        groups = _split_by_risk(by_slot[number])
        for group in groups:
            phases.append(_build_phase(slots[number], group, split=len(groups) > 1))

    if config.custom_phase_order:
        phases = _apply_custom_order(phases, config.custom_phase_order, catalog)

    skipped: list[DeploymentPhase] = []
    if config.skip_warning_phases:
        skipped = [p for p in phases if p.risk_level == RiskLevel.WARNING]
        phases = [p for p in phases if p.risk_level != RiskLevel.WARNING]
        for phase in skipped:
            logger.warning(f"Skipping Warning phase '{phase.name}' ({len(phase.operations)} operations)")

    for number, phase in enumerate(phases, start=1):
        phase.phase_number = number
    for phase in skipped:
        phase.phase_number = 0

    pre: list[DeploymentPhase] = []
    post: list[DeploymentPhase] = []
    if phases:
        pre, post = _framing_phases(catalog, generator, backup)

    overall = max((p.risk_level for p in phases), default=RiskLevel.SAFE)
    plan = DeploymentPlan(
        phases=phases,
        skipped_phases=skipped,
        pre_deployment_phases=pre,
        post_deployment_phases=post,
        overall_risk_level=overall,
        phased_deployment=config.enable_phased_deployment,
        requires_approval=any(p.requires_approval for p in phases),
        requires_dual_approval=any(p.risk_level == RiskLevel.RISKY for p in phases),
        metadata={
            "provider": provider,
            "environment": environment,
            "total_changes": len(changes),
            "total_operations": sum(len(p.operations) for p in phases),
            "skipped_operations": sum(len(p.operations) for p in skipped),
        },
    )
    validate_plan(plan)
    logger.info(
        f"Planned {plan.operation_count} operations in {len(phases)} phases "
        f"(overall risk: {overall.label})"
    )
    return plan

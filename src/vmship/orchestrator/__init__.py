"""Orchestration: dependency graph, planning, execution and the engine facade."""

from vmship.orchestrator.dependency_graph import DependencyGraph, ResourceNode, build, build_from_records
from vmship.orchestrator.planner import (
    ActionType,
    AttributeDiff,
    ChangePlanner,
    PlanAction,
    diff_attributes,
    format_plan,
    plan,
    plan_summary,
)
from vmship.orchestrator.executor import (
    ActionOutcome,
    ActionResult,
    ExecutionReport,
    ExecutionStatus,
    PlanExecutor,
    ProgressCallback,
)
from vmship.orchestrator.engine import Engine

__all__ = [
    # Dependency graph
    'DependencyGraph',
    'ResourceNode',
    'build',
    'build_from_records',

    # Planner
    'ActionType',
    'AttributeDiff',
    'ChangePlanner',
    'PlanAction',
    'diff_attributes',
    'format_plan',
    'plan',
    'plan_summary',

    # Executor
    'ActionOutcome',
    'ActionResult',
    'ExecutionReport',
    'ExecutionStatus',
    'PlanExecutor',
    'ProgressCallback',

    # Engine
    'Engine',
]

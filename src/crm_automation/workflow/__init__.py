"""Workflow definitions, step graph and condition evaluation."""

from .models import (
    Branch,
    FilterCondition,
    FilterOperator,
    Step,
    StepType,
    Trigger,
    TriggerType,
    Workflow,
    WorkflowSettings,
    WorkflowStatus,
)
from .conditions import ConditionRegistry, OperatorEvaluator
from .graph import StepGraph

__all__ = [
    "Branch",
    "FilterCondition",
    "FilterOperator",
    "Step",
    "StepType",
    "Trigger",
    "TriggerType",
    "Workflow",
    "WorkflowSettings",
    "WorkflowStatus",
    "ConditionRegistry",
    "OperatorEvaluator",
    "StepGraph",
]

"""Plans: models, guardrail, templates, generation and the plan cache."""

from conductor.plans.cache import PlanCache, PlanSelection
from conductor.plans.generator import GeneratedPlan, PlanGenerator
from conductor.plans.models import (
    CostEstimate,
    ExecutionRecord,
    ExecutionStatus,
    Plan,
    PlanPattern,
    PlanStep,
    PlanVariable,
    StepResult,
    estimate_cost,
)
from conductor.plans.templates import PlanBuilder, bind_variables, get_template, list_templates
from conductor.plans.validation import plan_allowed, validate_plan

__all__ = [
    "CostEstimate",
    "ExecutionRecord",
    "ExecutionStatus",
    "GeneratedPlan",
    "Plan",
    "PlanBuilder",
    "PlanCache",
    "PlanGenerator",
    "PlanPattern",
    "PlanSelection",
    "PlanStep",
    "PlanVariable",
    "StepResult",
    "bind_variables",
    "estimate_cost",
    "get_template",
    "list_templates",
    "plan_allowed",
    "validate_plan",
]

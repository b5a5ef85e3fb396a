from __future__ import annotations

"""Closed tag taxonomy and the deterministic tag -> workflow router."""

from typing import Iterable, List, Sequence

from .models import WorkflowClass

PRIMARY_TAGS = (
    "manual_scheduling",
    "scheduling_gap",
    "onboarding_delay",
    "onboarding_dropoff",
    "pipeline_leakage",
    "inconsistent_process",
    "handoff_friction",
    "visibility_gap",
    "no_show_risk",
    "late_engagement",
    "stakeholder_coordination",
    "capacity_constraint",
    "validated_flow",
    "optimization_ready",
    "awareness_missing",
    "unknown_state",
    "low_friction",
)
SECONDARY_TAGS = (
    "low_risk",
    "conversion_risk",
    "high_risk",
    "critical_risk",
    "validated_flow",
    "optimization_ready",
    "awareness_missing",
)
FALLBACK_TAGS = ("unknown_state", "low_risk")

# Router rules, evaluated in order; first match wins.
SALES_ALERT_TAGS = frozenset(
    {"critical_risk", "pipeline_leakage", "onboarding_dropoff", "high_risk", "conversion_risk"}
)
OPTIMIZATION_TAGS = frozenset(
    {
        "manual_scheduling",
        "scheduling_gap",
        "handoff_friction",
        "capacity_constraint",
        "stakeholder_coordination",
        "inconsistent_process",
    }
)
VALIDATION_TAGS = frozenset({"validated_flow", "low_friction", "optimization_ready"})

ROUTING_RULES = (
    (SALES_ALERT_TAGS, WorkflowClass.SALES_ALERT),
    (OPTIMIZATION_TAGS, WorkflowClass.OPTIMIZATION_WORKFLOW),
    (VALIDATION_TAGS, WorkflowClass.VALIDATION_PATH),
)

HIGH_RISK_MARKERS = ("high_risk", "critical", "urgent")


def is_valid_tag_pair(tags: Sequence[str]) -> bool:
    """True when tags is exactly [primary, secondary] drawn from the closed taxonomy."""
    if not isinstance(tags, (list, tuple)) or len(tags) != 2:
        return False
    primary, secondary = tags
    return primary in PRIMARY_TAGS and secondary in SECONDARY_TAGS


def route_workflow(tags: Iterable[str]) -> WorkflowClass:
    """Purpose: Map an option's tags to its workflow class.
    Inputs/Outputs: Input is the tag list; output is a WorkflowClass.
    Side Effects / State: None; pure function, safe to re-derive at any time.
    Dependencies: ROUTING_RULES priority table.
    Failure Modes: None; unknown or empty tags fall through to diagnostic_education.
    If Removed: Options carry no routing and the state machine cannot branch.
    Testing Notes: (pipeline_leakage, critical_risk) -> sales_alert.
    """
    tag_set = set(tags or ())
    for rule_tags, workflow in ROUTING_RULES:
        if tag_set & rule_tags:
            return workflow
    return WorkflowClass.DIAGNOSTIC_EDUCATION


def is_high_risk(tags: Iterable[str]) -> bool:
    """True when any tag contains a high-risk marker substring."""
    return any(marker in tag for tag in tags or () for marker in HIGH_RISK_MARKERS)


def taxonomy_prompt_block() -> str:
    """Render the taxonomy for inclusion in generation prompts."""
    lines: List[str] = [
        "Primary (Problem/Readiness): " + ", ".join(PRIMARY_TAGS),
        "Secondary (Risk/Modifier): " + ", ".join(SECONDARY_TAGS),
    ]
    return "\n".join(lines)

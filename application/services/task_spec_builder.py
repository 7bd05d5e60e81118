# application/services/task_spec_builder.py
import re
from typing import Dict, List, Optional, Tuple

from domain.models.task_session import TaskSession
from domain.models.work_item import (
    Classification,
    Complexity,
    DelegateTaskSpec,
    DelegationDecision,
    DelegationStrategy,
    Priority,
    TaskType,
    WorkItem,
)

BRANCH_PREFIX = "agent/"
MAX_BRANCH_LENGTH = 100

TIMEOUT_BY_COMPLEXITY: Dict[Complexity, int] = {
    Complexity.SIMPLE: 30 * 60,
    Complexity.MEDIUM: 2 * 60 * 60,
    Complexity.COMPLEX: 4 * 60 * 60,
}

TASK_HEADINGS: Dict[TaskType, str] = {
    TaskType.BUG_FIX: "Bug Fix Task",
    TaskType.FEATURE: "Feature Implementation Task",
    TaskType.REFACTOR: "Refactoring Task",
    TaskType.TEST: "Test Task",
    TaskType.DOCUMENTATION: "Documentation Task",
    TaskType.INVESTIGATION: "Investigation Task",
    TaskType.OTHER: "Engineering Task",
}

TASK_REQUIREMENTS: Dict[TaskType, Tuple[str, ...]] = {
    TaskType.BUG_FIX: (
        "Identify and fix the root cause, not the symptom",
        "Add a regression test that fails without the fix",
        "Keep the change backward compatible",
    ),
    TaskType.FEATURE: (
        "Implement the feature as described",
        "Add unit and integration tests",
        "Update user-facing documentation",
    ),
    TaskType.REFACTOR: (
        "Preserve all existing behaviour",
        "Add tests where coverage is missing before restructuring",
        "Document significant structural changes",
    ),
    TaskType.TEST: (
        "Cover the described behaviour including edge cases",
        "Keep tests deterministic and isolated",
    ),
    TaskType.DOCUMENTATION: (
        "Keep documentation accurate to the current code",
        "Include runnable examples where relevant",
    ),
    TaskType.INVESTIGATION: (
        "Report findings and the evidence behind them",
        "Propose concrete next steps; only change code to demonstrate a finding",
    ),
    TaskType.OTHER: (
        "Follow existing project conventions",
        "Add tests for any behaviour change",
    ),
}

STRATEGY_INSTRUCTIONS: Dict[DelegationStrategy, str] = {
    DelegationStrategy.DIRECT: "Open a pull request when done.",
    DelegationStrategy.REVIEW_FIRST: (
        "Open a pull request and request human review. Do not merge; "
        "the change must be reviewed before it lands."),
    DelegationStrategy.SPLIT: (
        "Handle the checklist below as separate, sequential sub-tasks, "
        "one commit per item."),
    DelegationStrategy.PARALLEL: (
        "The checklist items below are independent; work on them in parallel "
        "and report each separately."),
}


def slugify(text: str, max_length: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")
    return slug[:max_length].rstrip("-")


def sanitize_branch_name(name: str) -> str:
    """Make ``name`` a valid git ref component set"""
    branch = re.sub(r"[^A-Za-z0-9/._-]+", "-", name)
    branch = re.sub(r"\.{2,}", ".", branch)
    branch = re.sub(r"/{2,}", "/", branch)
    branch = re.sub(r"-{2,}", "-", branch)
    branch = branch[:MAX_BRANCH_LENGTH]
    return branch.strip("-./")


def branch_name_for(work_item: WorkItem) -> str:
    reference = (work_item.identifier or work_item.issue_id).lower()
    slug = slugify(work_item.title)
    name = f"{BRANCH_PREFIX}{reference}-{slug}" if slug else f"{BRANCH_PREFIX}{reference}"
    return sanitize_branch_name(name)


def labels_for(classification: Classification) -> Tuple[str, ...]:
    labels = ["agent", classification.task_type.value.replace("_", "-")]
    if classification.priority in (Priority.HIGH, Priority.CRITICAL):
        labels.append(f"priority:{classification.priority.value}")
    return tuple(labels)


class TaskSpecBuilder:
    """Assembles the request sent to the execution delegate"""

    def __init__(self, callback_url: Optional[str] = None):
        self.callback_url = callback_url

    def build(self, work_item: WorkItem, classification: Classification,
              decision: DelegationDecision, session: TaskSession) -> DelegateTaskSpec:
        if not decision.should_delegate:
            raise ValueError("Cannot build a delegate task for work that was not delegated")

        return DelegateTaskSpec(
            issue_id=work_item.issue_id,
            session_id=session.session_id,
            title=work_item.title,
            prompt=self.build_prompt(work_item, classification, decision),
            strategy=decision.strategy,
            priority=classification.priority,
            labels=labels_for(classification),
            branch_name=branch_name_for(work_item),
            require_review=decision.requires_review or decision.strategy == DelegationStrategy.REVIEW_FIRST,
            timeout_seconds=TIMEOUT_BY_COMPLEXITY[classification.complexity],
            auto_merge=False,
            create_pr=True,
            callback_url=self.callback_url,
        )

    def build_prompt(self, work_item: WorkItem, classification: Classification,
                     decision: DelegationDecision) -> str:
        reference = work_item.identifier or work_item.issue_id
        sections: List[str] = [
            f"# {TASK_HEADINGS[classification.task_type]}",
            f"## Issue: {reference} - {work_item.title}",
            work_item.description.strip() or "No description provided",
            "## Requirements",
            "\n".join(f"- {line}" for line in TASK_REQUIREMENTS[classification.task_type]),
            "## Context",
            "\n".join((
                f"- Type: {classification.task_type.value}",
                f"- Complexity: {classification.complexity.value} "
                f"(score {classification.complexity_score})",
                f"- Priority: {classification.priority.value}",
                f"- Estimated duration: {decision.estimated_duration}",
            )),
            "## Delivery",
            STRATEGY_INSTRUCTIONS.get(decision.strategy, ""),
        ]

        if decision.strategy in (DelegationStrategy.SPLIT, DelegationStrategy.PARALLEL):
            sections.append("## Checklist")
            sections.append("\n".join(f"{i}. {item}" for i, item
                                      in enumerate(classification.checklist_items, 1)))

        return "\n\n".join(section for section in sections if section)

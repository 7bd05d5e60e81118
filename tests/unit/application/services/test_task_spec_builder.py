# tests/unit/application/services/test_task_spec_builder.py
from datetime import datetime

import pytest

from application.services.task_spec_builder import (
    MAX_BRANCH_LENGTH,
    TaskSpecBuilder,
    branch_name_for,
    labels_for,
    sanitize_branch_name,
)
from domain.models.task_session import SessionStatus, TaskSession
from domain.models.work_item import (
    Classification,
    Complexity,
    DelegationDecision,
    DelegationStrategy,
    Priority,
    TaskType,
    WorkItem,
)


@pytest.fixture
def work_item():
    return WorkItem(issue_id="abc-123", identifier="ENG-42", title="Add CSV export for reports!",
                    description="Users need to export monthly reports.")


@pytest.fixture
def session():
    now = datetime(2024, 5, 1)
    return TaskSession(session_id="sess-1", issue_id="abc-123",
                       strategy=DelegationStrategy.SPLIT, status=SessionStatus.CREATED,
                       created_at=now, updated_at=now)


def classification(priority=Priority.MEDIUM, checklist=()):
    return Classification(task_type=TaskType.FEATURE, complexity=Complexity.MEDIUM,
                          priority=priority, complexity_score=7, confidence=0.8,
                          checklist_items=checklist)


def decision(strategy, should_delegate=True, requires_review=False):
    return DelegationDecision(should_delegate=should_delegate, strategy=strategy,
                              reason="score 7 meets threshold 6", estimated_duration="2-4 hours",
                              complexity_score=7, requires_review=requires_review)


class TestBranchNames:

    def test_branch_from_identifier_and_title(self, work_item):
        assert branch_name_for(work_item) == "agent/eng-42-add-csv-export-for-reports"

    def test_branch_falls_back_to_issue_id(self):
        work_item = WorkItem(issue_id="ABC-9", title="???", description="")

        assert branch_name_for(work_item) == "agent/abc-9"

    def test_sanitize_removes_invalid_ref_sequences(self):
        assert sanitize_branch_name("agent//feature..x y~z^") == "agent/feature.x-y-z"

    def test_sanitize_truncates(self):
        branch = sanitize_branch_name("agent/" + "a" * 200)

        assert len(branch) == MAX_BRANCH_LENGTH


class TestTaskSpecBuilder:

    def test_build_spec(self, work_item, session):
        builder = TaskSpecBuilder("https://coordinator.example.com/webhooks/delegate")

        spec = builder.build(work_item, classification(), decision(DelegationStrategy.DIRECT), session)

        assert spec.session_id == "sess-1"
        assert spec.issue_id == "abc-123"
        assert spec.branch_name == "agent/eng-42-add-csv-export-for-reports"
        assert spec.timeout_seconds == 2 * 60 * 60
        assert spec.require_review is False
        assert spec.auto_merge is False
        assert spec.create_pr is True
        assert spec.callback_url == "https://coordinator.example.com/webhooks/delegate"

    def test_review_first_requires_review(self, work_item, session):
        spec = TaskSpecBuilder().build(work_item, classification(),
                                       decision(DelegationStrategy.REVIEW_FIRST), session)

        assert spec.require_review is True
        assert "request human review" in spec.prompt

    def test_not_delegated_cannot_be_built(self, work_item, session):
        with pytest.raises(ValueError):
            TaskSpecBuilder().build(work_item, classification(),
                                    decision(DelegationStrategy.NONE, should_delegate=False), session)

    def test_prompt_sections(self, work_item):
        prompt = TaskSpecBuilder().build_prompt(work_item, classification(),
                                                decision(DelegationStrategy.DIRECT))

        assert prompt.startswith("# Feature Implementation Task")
        assert "## Issue: ENG-42 - Add CSV export for reports!" in prompt
        assert "Users need to export monthly reports." in prompt
        assert "- Complexity: medium (score 7)" in prompt
        assert "- Estimated duration: 2-4 hours" in prompt
        assert "## Checklist" not in prompt

    def test_split_prompt_numbers_checklist(self, work_item):
        prompt = TaskSpecBuilder().build_prompt(
            work_item, classification(checklist=("CSV", "XLSX")), decision(DelegationStrategy.SPLIT))

        assert "## Checklist\n\n1. CSV\n2. XLSX" in prompt

    def test_empty_description_placeholder(self):
        work_item = WorkItem(issue_id="i-1", title="Add export", description="")

        prompt = TaskSpecBuilder().build_prompt(work_item, classification(),
                                                decision(DelegationStrategy.DIRECT))

        assert "No description provided" in prompt

    def test_labels(self):
        assert labels_for(classification()) == ("agent", "feature")
        assert labels_for(classification(priority=Priority.CRITICAL)) == (
            "agent", "feature", "priority:critical")

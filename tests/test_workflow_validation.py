"""
Tests for Structured Output Validation and Prompts
==================================================

Tests covering workflow/validation.py and workflow/prompts.py:
- Schema validation of structured agent payloads
- Plan heading checks and correction feedback
- Subtask list checks, type inference and QA synthesis
"""

import json

import pytest

from agents.adapters.mock import MOCK_PLAN
from core.errors import ValidationError
from tasks import Subtask, SubtaskType, Task
from workflow.prompts import (
    PLAN_HEADINGS,
    build_dev_subtask_prompt,
    build_plan_correction_prompt,
    build_planning_prompt,
    build_qa_subtask_prompt,
    build_subtask_generation_prompt,
)
from workflow.validation import (
    PlanOutput,
    SubtaskDraft,
    SubtaskPlanOutput,
    build_subtasks,
    infer_subtask_type,
    parse_structured,
    validate_plan_markdown,
    validate_subtask_plan,
)


def _draft(sid, label="Step", content="Implement it", type_=None):
    return SubtaskDraft(id=sid, label=label, content=content, type=type_)


# =============================================================================
# Structured payloads
# =============================================================================


class TestParseStructured:
    """Tests for parse_structured."""

    def test_structured_payload_preferred(self):
        parsed = parse_structured({"plan": "# Plan"}, "not json at all", PlanOutput)

        assert parsed.plan == "# Plan"

    def test_whole_output_parsed_as_json(self):
        output = json.dumps({"subtasks": [{"id": "s1", "content": "c", "label": "l"}]})

        parsed = parse_structured(None, output, SubtaskPlanOutput)

        assert parsed.subtasks[0].id == "s1"

    def test_embedded_json_is_not_scraped(self):
        output = 'Here is the plan: {"plan": "# Plan"} hope it helps'

        with pytest.raises(ValidationError):
            parse_structured(None, output, PlanOutput)

    def test_field_issues_name_the_field(self):
        payload = {"subtasks": [{"id": "s1", "content": "", "label": "l"}]}

        with pytest.raises(ValidationError) as exc_info:
            parse_structured(payload, "", SubtaskPlanOutput)

        fields = [issue.field for issue in exc_info.value.issues]
        assert "subtasks.0.content" in fields
        assert "subtasks.0.content" in exc_info.value.feedback()

    def test_camel_case_active_form_accepted(self):
        payload = {"subtasks": [{"id": "s1", "content": "c", "label": "l", "activeForm": "Doing"}]}

        parsed = parse_structured(payload, "", SubtaskPlanOutput)

        assert parsed.subtasks[0].active_form == "Doing"


# =============================================================================
# Plans
# =============================================================================


class TestPlanValidation:
    """Tests for validate_plan_markdown."""

    def test_canned_plan_is_valid(self):
        result = validate_plan_markdown(MOCK_PLAN)

        assert result.valid
        assert result.errors == []

    def test_missing_headings_are_errors(self):
        result = validate_plan_markdown("# Plan\n\n## Overview\nJust do it.\n")

        assert not result.valid
        missing = {issue.field for issue in result.errors}
        assert "section:technical_approach" in missing
        assert "section:success_criteria" in missing

    def test_steps_must_be_numbered(self):
        plan = MOCK_PLAN.replace("1. Add", "- Add").replace("2. Implement", "- Implement").replace(
            "3. Wire", "- Wire"
        )

        result = validate_plan_markdown(plan)

        assert [issue.field for issue in result.errors] == ["section:implementation_steps"]

    def test_short_plan_only_warns(self):
        plan = "\n".join(f"## {h}\n1. a\n2. b\n- x" for h in PLAN_HEADINGS)

        result = validate_plan_markdown(plan)

        assert result.valid
        assert any("short" in w for w in result.warnings)
        assert any("title" in w for w in result.warnings)

    def test_empty_plan(self):
        assert not validate_plan_markdown("   ").valid

    def test_feedback_lists_errors_and_headings(self):
        feedback = validate_plan_markdown("# Plan").feedback()

        assert "VALIDATION ERRORS" in feedback
        for heading in PLAN_HEADINGS:
            assert f"## {heading}" in feedback


# =============================================================================
# Subtasks
# =============================================================================


class TestSubtaskValidation:
    """Tests for subtask checks, inference and synthesis."""

    def test_empty_list_rejected(self):
        with pytest.raises(ValidationError):
            validate_subtask_plan(SubtaskPlanOutput(subtasks=[]))

    def test_duplicate_ids_rejected(self):
        output = SubtaskPlanOutput(subtasks=[_draft("s1"), _draft("s1")])

        with pytest.raises(ValidationError) as exc_info:
            validate_subtask_plan(output)
        assert exc_info.value.issues[0].subtask_id == "s1"

    def test_long_list_only_warns(self):
        output = SubtaskPlanOutput(subtasks=[_draft(f"s{i}") for i in range(25)])

        assert len(validate_subtask_plan(output)) == 1

    def test_type_inference(self):
        assert infer_subtask_type(_draft("s1", label="Run unit tests")) == SubtaskType.QA
        assert infer_subtask_type(_draft("s2", content="Verify the build")) == SubtaskType.QA
        assert infer_subtask_type(_draft("s3", label="Add endpoint")) == SubtaskType.DEV
        assert (
            infer_subtask_type(_draft("s4", label="Run tests", type_=SubtaskType.DEV))
            == SubtaskType.DEV
        )

    def test_dev_before_qa(self):
        drafts = [
            _draft("q1", type_=SubtaskType.QA),
            _draft("d1", type_=SubtaskType.DEV),
            _draft("d2", type_=SubtaskType.DEV),
        ]

        subtasks = build_subtasks(drafts)

        assert [s.id for s in subtasks] == ["d1", "d2", "q1"]

    def test_qa_synthesized_when_missing(self):
        drafts = [_draft(f"d{i}", label=f"Build part {i}") for i in range(1, 6)]

        subtasks = build_subtasks(drafts)

        qa = [s for s in subtasks if s.type == SubtaskType.QA]
        assert len(qa) == 3
        assert qa[0].id == "subtask-qa-1"
        assert qa[0].label == "Verify Step 1"
        assert qa[0].active_form == "Verifying Step 1"
        assert qa[0].content.startswith("[AUTO] Verify implementation step 1")

    def test_single_dev_gets_no_synthesized_qa(self):
        subtasks = build_subtasks([_draft("d1", label="Build it")])

        assert [s.type for s in subtasks] == [SubtaskType.DEV]

    def test_active_form_defaults_from_label(self):
        (subtask,) = build_subtasks([_draft("d1", label="Add endpoint")])

        assert subtask.active_form == "Working on Add endpoint"

    def test_used_ids_are_not_reused(self):
        subtasks = build_subtasks([_draft("d1", label="Build it")], used_ids={"d1", "d1-2"})

        assert subtasks[0].id == "d1-3"


# =============================================================================
# Prompts
# =============================================================================


class TestPrompts:
    """Tests for prompt builders."""

    def test_planning_prompt_lists_headings(self):
        prompt = build_planning_prompt(Task(title="Add search", description="Full text"))

        assert "Add search" in prompt
        for heading in PLAN_HEADINGS:
            assert f"## {heading}" in prompt

    def test_correction_prompt_carries_feedback(self):
        prompt = build_plan_correction_prompt(Task(title="Add search"), "# Old", "fix X")

        assert "# Old" in prompt
        assert "fix X" in prompt

    def test_generation_prompt_includes_plan(self):
        task = Task(title="Add search", plan_content="# Approved plan")

        assert "# Approved plan" in build_subtask_generation_prompt(task)

    def test_subtask_prompts(self):
        task = Task(title="Add search")
        subtask = Subtask(id="s1", content="Create the index", label="Index")

        assert "Create the index" in build_dev_subtask_prompt(task, subtask)
        assert "QA Subtask" in build_qa_subtask_prompt(task, subtask)

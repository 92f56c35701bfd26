"""
Structured Output Validation
============================

Schemas for the structured payloads agents return, and the checks applied
to them before they touch a task record.

Agent output is never searched for an embedded JSON blob. The adapter's
structured payload is used when present; otherwise the whole output text
must itself be a JSON document matching the schema.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Annotated, Any, TypeVar

from pydantic import BaseModel, ConfigDict, StringConstraints
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from core.errors import FieldIssue, ValidationError
from tasks.models import Subtask, SubtaskStatus, SubtaskType

from .prompts import PLAN_HEADINGS

logger = logging.getLogger(__name__)

MAX_RECOMMENDED_SUBTASKS = 20
QA_RATIO = 0.6

QA_SIGNALS = [
    "validate",
    "verification",
    "verify",
    "qa",
    "test",
    "unit test",
    "integration",
    "e2e",
    "lint",
    "typecheck",
    "type check",
    "run build",
    "build passes",
    "cross-check",
    "cross check",
    "review",
]

NonEmpty = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

M = TypeVar("M", bound=BaseModel)


class PlanOutput(BaseModel):
    plan: NonEmpty


class SubtaskDraft(BaseModel):
    """A subtask as proposed by the generation agent."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: NonEmpty
    content: NonEmpty
    label: NonEmpty
    type: SubtaskType | None = None
    active_form: str | None = None


class SubtaskPlanOutput(BaseModel):
    subtasks: list[SubtaskDraft]


@dataclass
class PlanValidation:
    errors: list[FieldIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def feedback(self) -> str:
        """Correction instructions for a regeneration prompt."""
        parts = []
        if self.errors:
            parts.append("VALIDATION ERRORS - Please fix these issues:")
            parts.extend(f"{i}. [{e.field}] {e.issue}" for i, e in enumerate(self.errors, 1))
        if self.warnings:
            parts.append("")
            parts.append("WARNINGS (not critical, but recommended):")
            parts.extend(f"{i}. {w}" for i, w in enumerate(self.warnings, 1))
        parts.append("")
        parts.append("Every one of these headings is required:")
        parts.extend(f"## {h}" for h in PLAN_HEADINGS)
        return "\n".join(parts)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_structured(
    structured: dict[str, Any] | None, output: str, schema: type[M]
) -> M:
    """Validate an agent's final payload against *schema*.

    Raises:
        ValidationError: Payload missing or not matching the schema; the
            issues list names each offending field
    """
    try:
        if structured is not None:
            return schema.model_validate(structured)
        return schema.model_validate_json((output or "").strip())
    except PydanticValidationError as e:
        issues = [
            FieldIssue(".".join(str(part) for part in err["loc"]) or "root", err["msg"])
            for err in e.errors()
        ]
        raise ValidationError(
            f"Agent output does not match the {schema.__name__} schema", issues
        ) from e


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


def _section(markdown: str, heading: str) -> str | None:
    pattern = re.compile(
        rf"^##\s+{re.escape(heading)}\s*$(.*?)(?=^##\s+|\Z)",
        re.IGNORECASE | re.MULTILINE | re.DOTALL,
    )
    match = pattern.search(markdown)
    return match.group(1).strip() if match else None


def validate_plan_markdown(plan: str) -> PlanValidation:
    """Check a plan for the required ``## <heading>`` sections.

    Implementation Steps must contain at least two numbered steps. Missing
    title, missing file paths and very short plans only produce warnings.
    """
    result = PlanValidation()
    markdown = (plan or "").strip()
    if not markdown:
        result.errors.append(FieldIssue("plan", "Plan is empty"))
        return result

    if not re.search(r"^#\s+.+", markdown, re.MULTILINE):
        result.warnings.append(
            "Missing top-level title (recommend starting with `# Implementation Plan`)."
        )

    for heading in PLAN_HEADINGS:
        if _section(markdown, heading) is None:
            key = heading.lower().replace(" ", "_")
            result.errors.append(
                FieldIssue(f"section:{key}", f'Missing required section heading: "## {heading}"')
            )

    steps = _section(markdown, "Implementation Steps")
    if steps is not None and len(re.findall(r"^\s*\d+\.\s+\S+", steps, re.MULTILINE)) < 2:
        result.errors.append(
            FieldIssue(
                "section:implementation_steps",
                "Implementation Steps must include a numbered list (e.g., `1. ...`, `2. ...`).",
            )
        )

    files = _section(markdown, "Files to Modify")
    if files is not None and not re.search(r"^\s*[-*]\s+\S", files, re.MULTILINE):
        result.warnings.append("Files to Modify should be a bullet list of file paths.")

    if len(markdown) < 400:
        result.warnings.append(
            f"Plan looks very short ({len(markdown)} chars). Consider adding more detail."
        )
    return result


# ---------------------------------------------------------------------------
# Subtasks
# ---------------------------------------------------------------------------


def validate_subtask_plan(output: SubtaskPlanOutput) -> list[str]:
    """Reject empty lists and duplicate ids.

    Returns:
        Warnings that do not block the plan

    Raises:
        ValidationError: The list is unusable
    """
    issues: list[FieldIssue] = []
    if not output.subtasks:
        issues.append(FieldIssue("subtasks", "Subtasks array is empty. Generate at least 1 subtask."))

    seen: set[str] = set()
    for index, draft in enumerate(output.subtasks):
        if draft.id in seen:
            issues.append(
                FieldIssue(f"subtasks[{index}].id", f'Duplicate ID "{draft.id}"', draft.id)
            )
        seen.add(draft.id)

    if issues:
        raise ValidationError("Generated subtasks are invalid", issues)

    warnings = []
    if len(output.subtasks) > MAX_RECOMMENDED_SUBTASKS:
        warnings.append(
            f"Subtasks count is {len(output.subtasks)}; keep it under 15 for sequential execution."
        )
    return warnings


def infer_subtask_type(draft: SubtaskDraft) -> SubtaskType:
    """Explicit type wins; otherwise verification-sounding work is QA."""
    if draft.type is not None:
        return draft.type
    haystack = f"{draft.label} {draft.content}".lower()
    if any(signal in haystack for signal in QA_SIGNALS):
        return SubtaskType.QA
    return SubtaskType.DEV


def _fresh_id(candidate: str, used: set[str]) -> str:
    if candidate not in used:
        return candidate
    n = 2
    while f"{candidate}-{n}" in used:
        n += 1
    return f"{candidate}-{n}"


def build_subtasks(drafts: list[SubtaskDraft], used_ids: set[str] | None = None) -> list[Subtask]:
    """Turn validated drafts into pending subtasks, dev first then QA.

    When no draft is QA, ``floor(0.6 * dev count)`` verification subtasks are
    synthesized. Ids already in *used_ids* are never reused.
    """
    used = set(used_ids or ())
    dev: list[Subtask] = []
    qa: list[Subtask] = []
    for draft in drafts:
        subtask_id = _fresh_id(draft.id, used)
        used.add(subtask_id)
        subtask = Subtask(
            id=subtask_id,
            content=draft.content,
            label=draft.label,
            type=infer_subtask_type(draft),
            status=SubtaskStatus.PENDING,
            active_form=draft.active_form or f"Working on {draft.label}",
        )
        (qa if subtask.type == SubtaskType.QA else dev).append(subtask)

    if not qa:
        for i in range(1, math.floor(len(dev) * QA_RATIO) + 1):
            subtask_id = _fresh_id(f"subtask-qa-{i}", used)
            used.add(subtask_id)
            qa.append(
                Subtask(
                    id=subtask_id,
                    content=(
                        f"[AUTO] Verify implementation step {i} - "
                        "Validate the corresponding development work"
                    ),
                    label=f"Verify Step {i}",
                    type=SubtaskType.QA,
                    active_form=f"Verifying Step {i}",
                )
            )
        if qa:
            logger.info("[Validation] Synthesized %d QA subtask(s)", len(qa))

    return dev + qa

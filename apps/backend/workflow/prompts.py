"""
Agent Prompts
=============

Prompt builders for each kind of agent run the engine starts: plan
generation, plan correction, plan revision from user feedback, subtask
generation, and one dev or QA subtask.
"""

from __future__ import annotations

import json

from tasks.models import Subtask, Task

PLAN_HEADINGS = [
    "Overview",
    "Technical Approach",
    "Implementation Steps",
    "Files to Modify",
    "Testing Strategy",
    "Potential Issues",
    "Success Criteria",
]


def _task_header(task: Task) -> str:
    lines = [f"Title: {task.title}", f"Description: {task.description}", ""]
    lines.append(f"CLI Tool: {task.cli_tool}")
    if task.cli_config:
        lines.append(f"CLI Config: {json.dumps(task.cli_config, indent=2)}")
    return "\n".join(lines)


def build_planning_prompt(task: Task) -> str:
    headings = "\n".join(f"- ## {h}" for h in PLAN_HEADINGS)
    return f"""You are an AI planning assistant. Your task is to help plan the implementation of the following task:

{_task_header(task)}

# PLANNING

Your goal is to create a comprehensive implementation plan for this task.

Create a detailed plan in EXACTLY this structure (required headings):
{headings}

"Implementation Steps" must be a numbered list and "Files to Modify" a bullet
list of file paths. Format the plan in Markdown.

Return your plan in the following JSON format:
{{
  "plan": "# Implementation Plan\\n\\n## Overview\\n...full markdown plan here..."
}}

IMPORTANT: Return ONLY valid JSON. Do not include any markdown formatting around the JSON."""


def build_plan_correction_prompt(task: Task, previous_plan: str, feedback: str) -> str:
    return f"""You previously generated an implementation plan, but it failed validation against the required format.

Task: {task.title}
Description: {task.description}

Here is your previous plan:
{previous_plan}

{feedback}

Regenerate the plan so it passes validation.

IMPORTANT:
- Return ONLY valid JSON, no markdown fences, no extra text.
- Output shape must be: {{ "plan": "<markdown>" }}"""


def build_plan_feedback_prompt(task: Task, feedback: str) -> str:
    return f"""You are an AI planning assistant. You previously created an implementation plan, but the user has requested modifications.

**Original Task:**
Title: {task.title}
Description: {task.description}

**Current Plan:**
{task.plan_content or ""}

**User Feedback:**
{feedback}

Regenerate the plan incorporating the user's feedback while keeping the
required headings and overall structure.

Return your updated plan in the following JSON format:
{{
  "plan": "# Implementation Plan\\n\\n## Overview\\n...full updated markdown plan here..."
}}

IMPORTANT: Return ONLY valid JSON. No markdown fences, no extra text."""


def build_subtask_generation_prompt(task: Task) -> str:
    example = {
        "subtasks": [
            {
                "id": "subtask-1",
                "content": "Create the API route with a POST handler",
                "label": "Create API endpoint",
                "activeForm": "Creating API endpoint",
                "type": "dev",
            },
            {
                "id": "subtask-qa-1",
                "content": "Run the build and report any errors without changing code",
                "label": "Verify build",
                "activeForm": "Verifying build",
                "type": "qa",
            },
        ]
    }
    return f"""You are an AI development assistant. Your task is to break down an implementation plan into actionable subtasks.

**Task:** {task.title}
**Description:** {task.description}

**Approved Implementation Plan:**
{task.plan_content or ""}

# SUBTASK GENERATION

Break this plan into 5-15 concrete, actionable subtasks that can be executed sequentially.

For each subtask, provide:
- **id**: Unique identifier (e.g., "subtask-1", "subtask-2")
- **content**: Detailed description of what needs to be done
- **label**: Short label (3-5 words) for display
- **activeForm**: Present continuous form for progress display
- **type**: Either "dev" or "qa"

**Guidelines:**
1. Order subtasks logically (dependencies first)
2. Be specific about files, functions, and changes needed
3. Include at least 2 QA subtasks ("type": "qa") that ONLY verify or test
4. Put verification steps (build/test/lint/validate/verify) under QA, not dev

Return your subtasks in the following JSON format:
{json.dumps(example, indent=2)}

IMPORTANT: Return ONLY valid JSON. Do not include any markdown formatting or additional text."""


def build_dev_subtask_prompt(task: Task, subtask: Subtask) -> str:
    return f"""Execute the following subtask as part of the implementation plan for "{task.title}":

**Subtask:** {subtask.label}
**Details:** {subtask.content}

Please implement this subtask following best practices."""


def build_qa_subtask_prompt(task: Task, subtask: Subtask) -> str:
    return f"""Execute the following QA verification subtask for "{task.title}":

**QA Subtask:** {subtask.label}
**Details:** {subtask.content}

Please verify and test this thoroughly. Report problems; do not change code."""

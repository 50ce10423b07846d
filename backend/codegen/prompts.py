"""Prompt templates for the LiteLLM model-output provider.

Each template asks for a single JSON object so responses can be parsed with
``extract_json_from_response``:
- BLUEPRINT_PROMPT: Plan the project as an ordered list of phases
- PHASE_FILES_PROMPT: Produce the files of one phase
- REVIEW_PROMPT: Report problems in the files of one phase
- FIX_PROMPT: Produce corrected files for a list of issues
"""

import json

from codegen.generation_context import GenerationContext
from models.schemas import BlueprintPhase, Issue

BASE_GENERATOR_PROMPT = """\
You are a senior engineer generating a complete, buildable project from a
starting template. Work phase by phase. Never modify or recreate files listed
as protected. Always answer with one JSON object and nothing else."""

BLUEPRINT_PROMPT = """\
## Task
Plan the project below as an ordered list of implementation phases.
Each phase names the files it will create or change.

## Response Format
{"title": str, "description": str,
 "phases": [{"name": str, "description": str, "files": [str]}]}"""

PHASE_FILES_PROMPT = """\
## Task
Write the files for the phase below. Stage "generate" produces the phase's
files; stage "implement" completes any placeholder logic in them.

## Response Format
{"files": [{"filePath": str, "fileContents": str, "filePurpose": str}]}"""

REVIEW_PROMPT = """\
## Task
Review the files of the phase below. Report only concrete defects that would
break the build or the requested behavior.

## Response Format
{"issues": [{"message": str, "filePath": str | null, "severity": "blocking" | "warning"}]}"""

FIX_PROMPT = """\
## Task
Fix the issues listed below. Return only the files you changed.

## Response Format
{"files": [{"filePath": str, "fileContents": str, "filePurpose": str}]}"""


def compose_prompt_sections(*sections: str) -> str:
    """Compose prompt sections into a single deterministic prompt."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def build_project_section(context: GenerationContext) -> str:
    template = context.template_details
    protected = sorted({*template.dont_touch_files, *template.redacted_files})
    return f"""## Request
{context.query.strip()}

## Template
Name: {template.name}
Language: {template.language}
Frameworks: {", ".join(template.frameworks) or "none"}
Protected files: {", ".join(protected) or "none"}"""


def build_files_section(context: GenerationContext, max_chars: int = 60000) -> str:
    """Render the current files, truncated to ``max_chars`` of content."""
    parts: list[str] = ["## Current Files"]
    budget = max_chars
    for output in context.visible_files():
        body = output.file_contents
        if len(body) > budget:
            body = body[:budget] + "\n... [truncated]"
        budget = max(budget - len(body), 0)
        parts.append(f"### {output.file_path}\n{body}")
    return "\n\n".join(parts)


def build_phase_section(phase: BlueprintPhase, index: int) -> str:
    return f"""## Phase {index + 1}: {phase.name}
{phase.description.strip()}
Planned files: {", ".join(phase.files) or "unspecified"}"""


def build_issues_section(issues: list[Issue]) -> str:
    listed = [
        {"id": issue.id, "message": issue.message, "filePath": issue.file_path}
        for issue in issues
    ]
    return "## Issues\n" + json.dumps(listed, indent=2)


def blueprint_messages(context: GenerationContext) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": BASE_GENERATOR_PROMPT},
        {
            "role": "user",
            "content": compose_prompt_sections(
                build_project_section(context),
                build_files_section(context),
                BLUEPRINT_PROMPT,
            ),
        },
    ]


def phase_files_messages(
    context: GenerationContext, phase: BlueprintPhase, index: int, stage: str
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": BASE_GENERATOR_PROMPT},
        {
            "role": "user",
            "content": compose_prompt_sections(
                build_project_section(context),
                build_files_section(context),
                build_phase_section(phase, index),
                f"Stage: {stage}",
                PHASE_FILES_PROMPT,
            ),
        },
    ]


def review_messages(
    context: GenerationContext, phase: BlueprintPhase, index: int
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": BASE_GENERATOR_PROMPT},
        {
            "role": "user",
            "content": compose_prompt_sections(
                build_project_section(context),
                build_files_section(context),
                build_phase_section(phase, index),
                REVIEW_PROMPT,
            ),
        },
    ]


def fix_messages(
    context: GenerationContext, phase: BlueprintPhase, index: int, issues: list[Issue]
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": BASE_GENERATOR_PROMPT},
        {
            "role": "user",
            "content": compose_prompt_sections(
                build_project_section(context),
                build_files_section(context),
                build_phase_section(phase, index),
                build_issues_section(issues),
                FIX_PROMPT,
            ),
        },
    ]

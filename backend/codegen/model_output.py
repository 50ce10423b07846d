"""The model-output boundary consumed by the phase orchestrator.

The language model is treated as a black box that turns a GenerationContext
into structured records: a Blueprint, FileOutput lists, or review Issues.
Anything satisfying ModelOutputProvider can drive generation; the production
implementation talks to LiteLLM through LLMClient.
"""

from typing import Any, Protocol

import pydantic
import structlog
from pydantic import TypeAdapter

from codegen import prompts
from codegen.generation_context import GenerationContext
from codegen.llm import LLMClient, extract_json_from_response
from errors import ModelOutputError
from models.schemas import (
    Blueprint,
    BlueprintPhase,
    FileOutput,
    Issue,
    IssueSeverity,
    IssueSource,
)

logger = structlog.get_logger(__name__)

_FILE_OUTPUTS = TypeAdapter(list[FileOutput])


class ModelOutputProvider(Protocol):
    """Capability that produces structured generation output.

    Implementations raise ModelOutputError on failure; ``transient=True``
    marks failures worth retrying.
    """

    async def generate_blueprint(self, context: GenerationContext) -> Blueprint: ...

    async def generate_phase_files(
        self,
        context: GenerationContext,
        phase: BlueprintPhase,
        phase_index: int,
        stage: str,
    ) -> list[FileOutput]: ...

    async def review_phase(
        self,
        context: GenerationContext,
        phase: BlueprintPhase,
        phase_index: int,
    ) -> list[Issue]: ...

    async def fix_issues(
        self,
        context: GenerationContext,
        phase: BlueprintPhase,
        phase_index: int,
        issues: list[Issue],
    ) -> list[FileOutput]: ...


class LLMModelOutputProvider:
    """ModelOutputProvider backed by an LLMClient.

    Every response must contain one JSON object; a response without one is a
    transient ModelOutputError, since a second sample usually parses.
    """

    def __init__(self, client: LLMClient | None = None, session_id: str | None = None) -> None:
        self.client = client or LLMClient()
        self.session_id = session_id

    async def generate_blueprint(self, context: GenerationContext) -> Blueprint:
        payload = await self._call_json(prompts.blueprint_messages(context), "blueprint")
        try:
            blueprint = Blueprint.model_validate(payload)
        except pydantic.ValidationError as e:
            raise ModelOutputError(f"Malformed blueprint: {e.error_count()} errors") from e

        logger.info(
            "blueprint_parsed",
            session_id=self.session_id,
            title=blueprint.title,
            phase_count=len(blueprint.phases),
        )
        return blueprint

    async def generate_phase_files(
        self,
        context: GenerationContext,
        phase: BlueprintPhase,
        phase_index: int,
        stage: str,
    ) -> list[FileOutput]:
        payload = await self._call_json(
            prompts.phase_files_messages(context, phase, phase_index, stage),
            f"phase_{stage}",
        )
        return self._parse_files(payload)

    async def review_phase(
        self,
        context: GenerationContext,
        phase: BlueprintPhase,
        phase_index: int,
    ) -> list[Issue]:
        payload = await self._call_json(
            prompts.review_messages(context, phase, phase_index),
            "review",
        )
        raw_issues = payload.get("issues", [])
        if not isinstance(raw_issues, list):
            raise ModelOutputError("Malformed review: 'issues' is not a list")

        issues: list[Issue] = []
        for raw in raw_issues:
            if not isinstance(raw, dict) or not str(raw.get("message", "")).strip():
                continue
            severity = raw.get("severity", IssueSeverity.BLOCKING)
            issues.append(
                Issue(
                    message=str(raw["message"]).strip(),
                    file_path=raw.get("filePath") or raw.get("file_path"),
                    severity=(
                        IssueSeverity.WARNING
                        if severity == IssueSeverity.WARNING
                        else IssueSeverity.BLOCKING
                    ),
                    source=IssueSource.REVIEW,
                    phase_index=phase_index,
                )
            )
        return issues

    async def fix_issues(
        self,
        context: GenerationContext,
        phase: BlueprintPhase,
        phase_index: int,
        issues: list[Issue],
    ) -> list[FileOutput]:
        payload = await self._call_json(
            prompts.fix_messages(context, phase, phase_index, issues),
            "fix",
        )
        return self._parse_files(payload)

    async def _call_json(self, messages: list[dict[str, str]], purpose: str) -> dict[str, Any]:
        response = await self.client.call(messages, session_id=self.session_id)
        payload = extract_json_from_response(response.content)
        if payload is None:
            logger.warning(
                "model_output_unparseable",
                session_id=self.session_id,
                purpose=purpose,
                content_preview=response.content[:200],
            )
            raise ModelOutputError(f"No JSON object in model response ({purpose})")
        return payload

    @staticmethod
    def _parse_files(payload: dict[str, Any]) -> list[FileOutput]:
        try:
            return _FILE_OUTPUTS.validate_python(payload.get("files", []))
        except pydantic.ValidationError as e:
            raise ModelOutputError(f"Malformed file output: {e.error_count()} errors") from e

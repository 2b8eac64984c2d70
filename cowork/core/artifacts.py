"""
Artifact extraction from assistant text.

Backends announce files they produced with fenced blocks:

    ```artifact
    {"path": "report.md", "name": "Report", "type": "markdown"}
    ```

The block may hold one object or an array of objects. Blocks are
stripped from the visible text and each artifact becomes a completed
tool_result trace step.
"""
import json
import logging
import re
from typing import Optional

from pydantic import BaseModel

from .schemas import TraceStep, TraceStepStatus, TraceStepType

logger = logging.getLogger(__name__)

ARTIFACT_BLOCK_PATTERN = re.compile(r"```artifact\s*(.*?)```", re.DOTALL)
EXCESS_NEWLINES_PATTERN = re.compile(r"\n{3,}")


class ArtifactInfo(BaseModel):
    path: str
    name: Optional[str] = None
    type: Optional[str] = None


def _parse_block(json_text: str) -> list[ArtifactInfo]:
    try:
        parsed = json.loads(json_text.strip())
    except json.JSONDecodeError:
        logger.debug("Ignoring artifact block with invalid JSON")
        return []

    items = parsed if isinstance(parsed, list) else [parsed]
    artifacts = []
    for item in items:
        if not isinstance(item, dict):
            continue
        path = item.get("path")
        if not isinstance(path, str) or not path:
            continue
        name = item.get("name")
        kind = item.get("type")
        artifacts.append(
            ArtifactInfo(
                path=path,
                name=name if isinstance(name, str) else None,
                type=kind if isinstance(kind, str) else None,
            )
        )
    return artifacts


def extract_artifacts(text: str) -> tuple[str, list[ArtifactInfo]]:
    """
    Strip artifact blocks from text.

    Args:
        text: Raw assistant text.

    Returns:
        Tuple of (clean text, artifacts). The clean text has runs of three
        or more newlines collapsed to two and trailing whitespace removed.
    """
    if not text:
        return text, []

    artifacts: list[ArtifactInfo] = []

    def _strip(match: re.Match) -> str:
        artifacts.extend(_parse_block(match.group(1)))
        return ""

    clean = ARTIFACT_BLOCK_PATTERN.sub(_strip, text)
    clean = EXCESS_NEWLINES_PATTERN.sub("\n\n", clean).rstrip()
    return clean, artifacts


def build_artifact_trace_steps(artifacts: list[ArtifactInfo]) -> list[TraceStep]:
    """One completed tool_result step titled "artifact" per artifact."""
    return [
        TraceStep(
            type=TraceStepType.TOOL_RESULT,
            status=TraceStepStatus.COMPLETED,
            title="artifact",
            tool_name="artifact",
            tool_output=artifact.model_dump_json(exclude_none=True),
        )
        for artifact in artifacts
    ]

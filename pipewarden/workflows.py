"""Workflow-definition loading.

Workflow files are YAML in the GitHub Actions shape.  PyYAML parses the
bare key ``on`` as the boolean ``True`` (YAML 1.1), so it is mapped back
to ``"on"`` before validation.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pydantic
import yaml

from pipewarden.core.errors import ValidationError
from pipewarden.models.policy import WorkflowDefinition


def parse_workflow(document: Any, *, source: str = "<mapping>") -> WorkflowDefinition:
    """Validate a parsed workflow document into a ``WorkflowDefinition``.

    Raises
    ------
    ValidationError
        The document is not a mapping or does not fit the workflow shape.
    """
    if not isinstance(document, dict):
        raise ValidationError(
            f"Workflow {source} must be a mapping, got {type(document).__name__}"
        )
    normalized = {("on" if key is True else str(key)): value for key, value in document.items()}
    try:
        return WorkflowDefinition.model_validate(normalized)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Malformed workflow {source}: {exc}") from exc


def load_workflow(path: Path) -> WorkflowDefinition:
    """Read and validate a workflow YAML file."""
    path = Path(path)
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ValidationError(f"Cannot read workflow {path}: {exc}") from exc
    return parse_workflow(document, source=str(path))

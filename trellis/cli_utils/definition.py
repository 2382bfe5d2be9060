"""Helpers to read workflow definition files."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import yaml

from trellis.contracts import WorkflowDefinition

_EDGE_ALIASES = {"from": "from_node_id", "to": "to_node_id", "when": "condition"}


def _normalize_transition(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {_EDGE_ALIASES.get(key, key): value for key, value in raw.items()}


def load_definition(path: Path) -> WorkflowDefinition:
    """Read a YAML or JSON definition file into an unpublished definition.

    Transitions may use the short ``from``/``to``/``when`` keys. A missing
    ``key`` defaults to the file name without its suffix.
    """
    text = Path(path).read_text()
    if Path(path).suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a workflow definition mapping")

    data.setdefault("key", Path(path).stem)
    data["transitions"] = [
        _normalize_transition(t) for t in data.get("transitions") or []
    ]
    # Ids are assigned on publish.
    data.pop("id", None)
    data.pop("version", None)
    data.pop("published_at", None)
    return WorkflowDefinition.model_validate(data)

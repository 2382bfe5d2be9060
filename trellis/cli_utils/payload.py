"""Parsing of JSON arguments passed on the command line."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional


def parse_payload(value: Optional[str]) -> Dict[str, Any]:
    """Parse a JSON object given inline or as ``@path/to/file.json``."""
    if not value:
        return {}
    if value.startswith("@"):
        value = Path(value[1:]).read_text()
    data = json.loads(value)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data

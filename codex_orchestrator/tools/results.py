"""Tool result helpers shared by the tool modules."""

import json
from typing import Any

from ..errors import OrchestratorError


def _text(text: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}]}


def _json(data: Any) -> dict[str, Any]:
    return _text(json.dumps(data, ensure_ascii=False, indent=2))


def _error(text: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": f"Error: {text}"}], "is_error": True}


def _failure(e: OrchestratorError) -> dict[str, Any]:
    """Structured error result (code + fields) for precondition failures."""
    return {
        "content": [{"type": "text", "text": f"Error: {e}\n{json.dumps(e.to_dict(), ensure_ascii=False)}"}],
        "is_error": True,
    }

"""Prompt catalog backed by ``deepcite/prompts/prompts.json``.

Keys are dotted paths into the JSON object (``"synthesis.report_prompt"``).
Values are ``string.Template`` strings. The catalog is reloaded when the file
changes on disk.
"""

from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"

_cache: tuple[int, dict[str, Any]] | None = None


def _catalog() -> dict[str, Any]:
    global _cache
    mtime_ns = PROMPTS_PATH.stat().st_mtime_ns
    if _cache is None or _cache[0] != mtime_ns:
        payload = json.loads(PROMPTS_PATH.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Prompt catalog {PROMPTS_PATH} must be a JSON object")
        _cache = (mtime_ns, payload)
    return _cache[1]


def get_prompt(key: str) -> str:
    node: Any = _catalog()
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(f"Prompt key not found: {key}")
        node = node[part]
    if not isinstance(node, str):
        raise TypeError(f"Prompt key does not name a template: {key}")
    return node


def render_prompt(key: str, **values: Any) -> str:
    template = Template(get_prompt(key))
    try:
        return template.substitute(**values)
    except KeyError as exc:
        raise KeyError(f"Prompt '{key}' needs a value for '{exc.args[0]}'") from exc


def clear_prompt_cache() -> None:
    global _cache
    _cache = None

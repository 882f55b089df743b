from __future__ import annotations

import pytest

from deepcite.services.prompt_store import clear_prompt_cache, get_prompt, render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt(
        "planner.queries_prompt",
        prompt="How efficient are perovskite solar cells?",
    )
    assert "How efficient are perovskite solar cells?" in prompt
    assert "Return ONLY numbered queries" in prompt


def test_render_prompt_reports_missing_value():
    with pytest.raises(KeyError, match="needs a value"):
        render_prompt("planner.queries_prompt")


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_get_prompt_rejects_non_leaf_keys():
    with pytest.raises(TypeError):
        get_prompt("sections")


def test_cache_can_be_cleared():
    first = get_prompt("planner.system_prompt")
    clear_prompt_cache()
    assert get_prompt("planner.system_prompt") == first

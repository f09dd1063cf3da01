"""Unit tests for the Jinja2 prompt renderer (autoship.prompts).

Tests cover:
- Custom filters (bullets, numbered, tail)
- Strict undefined variables
- Rendering the shipped fix-task and troubleshooting templates
"""

from __future__ import annotations

from pathlib import Path

import jinja2
import pytest

from autoship.prompts import PromptRenderer


@pytest.fixture
def custom_renderer(tmp_path: Path) -> PromptRenderer:
    (tmp_path / "filters.md.j2").write_text(
        "{{ items | bullets('none') }}|{{ items | numbered }}|{{ text | tail(3) }}"
    )
    (tmp_path / "strict.md.j2").write_text("{{ missing }}")
    return PromptRenderer(tmp_path)


class TestFilters:
    @pytest.mark.unit
    def test_filters(self, custom_renderer: PromptRenderer):
        out = custom_renderer.render("filters", items=["a", "b"], text="abcdef")
        assert out == "- a\n- b|1. a\n2. b|def"

    @pytest.mark.unit
    def test_empty_bullets(self, custom_renderer: PromptRenderer):
        out = custom_renderer.render("filters", items=[], text="ab")
        assert out == "none||ab"

    @pytest.mark.unit
    def test_undefined_variables_raise(self, custom_renderer: PromptRenderer):
        with pytest.raises(jinja2.UndefinedError):
            custom_renderer.render("strict")


class TestShippedTemplates:
    @pytest.mark.unit
    def test_fix_task(self):
        out = PromptRenderer().render(
            "fix_task",
            original_title="Add login",
            original_task_id="T-1",
            commit_sha=None,
            error="TS2304",
            depth=2,
        )
        assert "**Commit SHA:** N/A" in out
        assert "TS2304" in out
        assert "fix attempt #2." in out

    @pytest.mark.unit
    def test_troubleshoot_tails_logs(self):
        out = PromptRenderer().render(
            "troubleshoot",
            attempt=2,
            max_attempts=3,
            project_id=None,
            error="unhealthy",
            logs="x" * 20000 + "END",
            containers=[],
            protected=["postgres"],
        )
        assert "attempt #2 of 3" in out
        assert "(default)" in out
        assert "(none found)" in out
        assert out.count("x") < 10500
        assert "END" in out

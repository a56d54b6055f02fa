"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from labctl.templates import TemplateEngine, TemplateRenderError

_REPORT_CONTEXT = {
    "generated_at": "2024-05-01T10:00:00+00:00",
    "inventory": "lab.yml",
    "report": {
        "summary": {"status": "succeeded", "exit_code": 0, "totals": {"succeeded": 1}},
        "machines": [
            {
                "name": "dc",
                "status": "succeeded",
                "steps": [
                    {"id": "promote", "status": "succeeded", "outcome": "applied", "attempts": 1}
                ],
            }
        ],
        "metadata": {},
    },
}


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("report/summary.md.j2", _REPORT_CONTEXT)

    assert output.startswith("# labctl run summary")
    assert "- Inventory: `lab.yml`" in output
    assert "| dc | succeeded |  |" in output
    assert "| promote | succeeded | applied | 1 |" in output


def test_render_inline_uses_context() -> None:
    """Inline strings render against the supplied variables."""
    engine = TemplateEngine.with_overrides(None)

    rendered = engine.render_inline("realm join {{ vars.domain }}", {"vars": {"domain": "lab"}})

    assert rendered == "realm join lab"


def test_render_inline_returns_plain_strings_unchanged() -> None:
    """Strings without template markers are not parsed."""
    engine = TemplateEngine.with_overrides(None)

    assert engine.render_inline("echo {not a template}", {}) == "echo {not a template}"


def test_undefined_variables_raise() -> None:
    """StrictUndefined turns missing variables into errors."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateRenderError, match="domain"):
        engine.render_inline("realm join {{ vars.domain }}", {"vars": {}})


def test_missing_template_raises() -> None:
    """Unknown template names are reported as render errors."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateRenderError, match="missing.j2"):
        engine.render_to_string("missing.j2", {})


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "reports" / "summary.md"

    changed = engine.render_to_path(
        "report/summary.md.j2", destination, _REPORT_CONTEXT, mode=0o600
    )

    assert changed is True
    assert oct(destination.stat().st_mode & 0o777) == "0o600"

    changed_again = engine.render_to_path(
        "report/summary.md.j2", destination, _REPORT_CONTEXT, mode=0o600
    )
    assert changed_again is False


def test_override_path_takes_precedence(tmp_path: Path) -> None:
    """Override templates shadow the built-in ones."""
    override_dir = tmp_path / "templates"
    override_template = override_dir / "report" / "summary.md.j2"
    override_template.parent.mkdir(parents=True)
    override_template.write_text(
        "override {{ report.summary.status }}", encoding="utf-8"
    )

    engine = TemplateEngine.with_overrides(override_dir)

    rendered = engine.render_to_string("report/summary.md.j2", _REPORT_CONTEXT)

    assert rendered == "override succeeded"

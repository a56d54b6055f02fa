"""Jinja2 rendering for inventory values and packaged report templates.

Built-in templates ship inside the package (``labctl/templates``). A site may
shadow any of them by placing a file with the same relative name under the
configured ``templates_dir``. Rendering is strict: referencing an undefined
variable is an error rather than an empty string.
"""
from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
)


class TemplateRenderError(RuntimeError):
    """Raised when a template cannot be loaded or rendered."""


class TemplateEngine:
    """Render packaged templates and inline template strings."""

    def __init__(self, environment: Environment) -> None:
        """Wrap a configured Jinja2 environment."""
        self._environment = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates under *override_dir*."""
        loaders = []
        if override_dir is not None and override_dir.expanduser().is_dir():
            loaders.append(FileSystemLoader(str(override_dir.expanduser())))
        loaders.append(PackageLoader("labctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        return cls(environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render the named template with *context*."""
        try:
            template = self._environment.get_template(name)
            return template.render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render template '{name}': {exc}") from exc

    def render_inline(self, source: str, context: Mapping[str, object]) -> str:
        """Render a template string; plain strings are returned unchanged."""
        if "{{" not in source and "{%" not in source:
            return source
        try:
            return self._environment.from_string(source).render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render {source!r}: {exc}") from exc

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return ``True`` when content changed."""
        content = self.render_to_string(name, context)
        if destination.exists() and destination.read_text(encoding="utf-8") == content:
            return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        temp = destination.with_name(f".{destination.name}.tmp")
        temp.write_text(content, encoding="utf-8")
        temp.chmod(mode)
        temp.replace(destination)
        return True


__all__ = ["TemplateEngine", "TemplateRenderError"]

"""Jinja2 prompt templates for the reasoning oracle.

``PromptRenderer`` loads the ``*.md.j2`` templates that live next to this
module and renders them with task, plan and deployment context.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

_DEFAULT_TEMPLATE_DIR = Path(__file__).parent


def _bullets(items: list[Any], empty: str = "") -> str:
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items)


def _numbered(items: list[Any]) -> str:
    return "\n".join(f"{index}. {item}" for index, item in enumerate(items, start=1))


def _tail(text: str, limit: int) -> str:
    return text[-limit:] if len(text) > limit else text


class PromptRenderer:
    """Renders oracle prompts from Jinja2 templates."""

    def __init__(self, template_dir: str | Path | None = None) -> None:
        self.template_dir = Path(template_dir or _DEFAULT_TEMPLATE_DIR)
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape([]),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["bullets"] = _bullets
        self.env.filters["numbered"] = _numbered
        self.env.filters["tail"] = _tail

    def render(self, name: str, **context: Any) -> str:
        """Render ``<name>.md.j2`` with ``context``."""
        return self.env.get_template(f"{name}.md.j2").render(**context)


__all__ = ["PromptRenderer"]

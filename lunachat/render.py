"""
HTML rendering with Jinja2.

Pages extend base.html; cards use the fragments under partial/ so that the
same markup is served on page load and pushed over SSE.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from .errors import RenderError
from .feeds import Card, PostCard, ThreadCard

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES_DIR = Path(__file__).parent / "templates"

CARD_TEMPLATES = {
    ThreadCard: "partial/thread.html",
    PostCard: "partial/post.html",
}


class Renderer:
    """Renders named templates and cards to HTML strings."""

    def __init__(self, templates_dir: str | Path = DEFAULT_TEMPLATES_DIR) -> None:
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template: str, **context: Any) -> str:
        """Render `template` with `context`.

        Raises:
            RenderError: If the template is missing or fails
        """
        try:
            return self.env.get_template(template).render(**context)
        except TemplateError as e:
            raise RenderError(template, str(e)) from e

    def render_card(self, card: Card) -> str:
        template = CARD_TEMPLATES[type(card)]
        return self.render(template, card=card)

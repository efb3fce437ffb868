"""Jinja2 template renderer for deployment emails.

Resolves templates with a two-tier loader:
1. User-specified ``deployment.templatesPath`` (overrides)
2. Built-in templates shipped with the package
"""

from __future__ import annotations

from typing import Any

from jinja2 import BaseLoader, ChoiceLoader, Environment, FileSystemLoader, PackageLoader, TemplateNotFound

from certkeeper.core.errors import DeployError


class TemplateRenderer:
    """Renders email subjects and bodies from Jinja2 templates."""

    def __init__(self, templates_path: str | None = None) -> None:
        loaders: list[BaseLoader] = []
        if templates_path:
            loaders.append(FileSystemLoader(templates_path))
        loaders.append(PackageLoader("certkeeper.deploy", "templates"))

        self._env = Environment(
            loader=ChoiceLoader(loaders),
            autoescape=True,
            keep_trailing_newline=False,
        )

    def render(self, template: str, context: dict[str, Any]) -> tuple[str, str]:
        """Render subject and body for *template*.

        Returns
        -------
        tuple[str, str]
            ``(subject, body_html)``

        """
        try:
            subject_tpl = self._env.get_template(f"{template}_subject.txt")
            body_tpl = self._env.get_template(f"{template}_body.html")
        except TemplateNotFound as exc:
            msg = f"Email template '{template}' not found ({exc.name})"
            raise DeployError(msg) from exc

        subject = subject_tpl.render(**context).strip()
        body = body_tpl.render(**context)

        return subject, body

"""Template Renderer — substitute ``@name@`` placeholders in text templates.

Rendering is a pure function of (template text, parameters): one pass, no
recursion into substituted values, no dependence on mapping order.  A
placeholder without a value is an error naming the key; extra parameters
are ignored.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from pathlib import Path

from matrixforge.core.errors import TemplateNotFound, UnboundParameter
from matrixforge.models.templates import TemplateSpec

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"@([A-Za-z_][A-Za-z0-9_]*)@")

#: Templates shipped with the package.
DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"


def placeholders(text: str) -> frozenset[str]:
    """Return every placeholder name referenced in *text*."""
    return frozenset(PLACEHOLDER_RE.findall(text))


def render_text(text: str, params: Mapping[str, str], *, name: str = "") -> str:
    """Render template *text* with *params*.

    Raises ``UnboundParameter`` for the first missing key in sorted order;
    the exception lists every missing key.
    """
    missing = sorted(placeholders(text) - set(params))
    if missing:
        raise UnboundParameter(missing[0], template=name, missing=missing)
    return PLACEHOLDER_RE.sub(lambda m: str(params[m.group(1)]), text)


class TemplateRenderer:
    """Renders template files resolved against a template directory.

    Parameters
    ----------
    template_dir:
        Directory relative template paths resolve against.  Defaults to the
        templates shipped in ``matrixforge/templates``.
    """

    def __init__(self, template_dir: Path | None = None) -> None:
        self._template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR

    @property
    def template_dir(self) -> Path:
        return self._template_dir

    def resolve(self, template_path: str | Path) -> Path:
        path = Path(template_path)
        if not path.is_absolute():
            path = self._template_dir / path
        if not path.is_file():
            raise TemplateNotFound(f"Template not found: {path}")
        return path

    def load(self, template_path: str | Path) -> str:
        return self.resolve(template_path).read_text(encoding="utf-8")

    def spec(self, template_path: str | Path) -> TemplateSpec:
        source = self.resolve(template_path)
        return TemplateSpec(
            source=source,
            required_params=placeholders(source.read_text(encoding="utf-8")),
        )

    def required_params(self, template_path: str | Path) -> frozenset[str]:
        return self.spec(template_path).required_params

    def render(self, template_path: str | Path, params: Mapping[str, str]) -> str:
        """Render the template at *template_path* with *params*."""
        text = self.load(template_path)
        rendered = render_text(text, params, name=str(template_path))
        logger.debug("Rendered template %s", template_path)
        return rendered

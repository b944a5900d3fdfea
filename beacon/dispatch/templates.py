"""Template rendering for notification content using Jinja2.

Each template is a set of files in the beacon.dispatch package's
`templates` directory sharing a base name:

- `<name>.txt.j2`: plain-text body (required; also used for chat)
- `<name>.subject.j2`: subject line (optional, defaults to the title)
- `<name>.html.j2`: HTML body (optional, autoescaped)
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from jinja2 import (
    Environment,
    PackageLoader,
    StrictUndefined,
    TemplateError,
    TemplateNotFound,
    select_autoescape,
)

from beacon.logging import get_logger

from .exceptions import NotificationTemplateError

logger = get_logger(__name__, component="dispatch")

DEFAULT_TEMPLATE = "default"


@dataclass(frozen=True)
class RenderedContent:
    subject: str
    text: str
    html: Optional[str] = None


class TemplateRenderer:
    """Renders notification templates.

    Templates are cached by the Jinja2 environment after the first load.
    """

    def __init__(self, package: str = "beacon.dispatch", template_dir: str = "templates"):
        self.env = Environment(
            loader=PackageLoader(package, template_dir),
            autoescape=select_autoescape(enabled_extensions=("html.j2",), default=False),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template_name: str, data: Dict[str, Any]) -> RenderedContent:
        """Render a template with the provided context.

        Args:
            template_name: Base name of the template files
            data: Template variables; `title` is used as the fallback subject

        Returns:
            RenderedContent with subject (single line), text and optional HTML

        Raises:
            NotificationTemplateError: If the text template is missing or rendering fails
        """
        try:
            text = self.env.get_template(f"{template_name}.txt.j2").render(data)

            subject_template = self._optional(f"{template_name}.subject.j2")
            if subject_template is not None:
                subject = subject_template.render(data)
            else:
                subject = str(data.get("title", ""))

            html_template = self._optional(f"{template_name}.html.j2")
            html = html_template.render(data) if html_template is not None else None

        except TemplateNotFound as e:
            raise NotificationTemplateError(
                f"Template not found: {template_name} ({e.name})", template=template_name
            ) from e
        except TemplateError as e:
            error_msg = f"Template rendering failed for {template_name}: {e}"
            logger.error(error_msg, extra={"event": "template.render.failed", "template": template_name})
            raise NotificationTemplateError(error_msg, template=template_name) from e

        return RenderedContent(
            subject=" ".join(subject.split()),
            text=text.strip(),
            html=html,
        )

    def _optional(self, filename: str):
        try:
            return self.env.get_template(filename)
        except TemplateNotFound:
            return None

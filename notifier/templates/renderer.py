"""Template rendering for channel content using Jinja2.

Templates are looked up as "<folder>/<code><ext>", e.g. "email/otp.html" or
"push/welcome.json". A configured directory is searched first, then the
templates bundled with the package, so deployments can override individual
files.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
    TemplateNotFound,
    select_autoescape,
)

from notifier.domain.models import Channel

from .exceptions import RenderError

logger = logging.getLogger(__name__)

TEMPLATE_LOCATIONS: Dict[Channel, Tuple[str, str]] = {
    Channel.EMAIL: ("email", ".html"),
    Channel.SMS: ("sms", ".txt"),
    Channel.WHATSAPP: ("whatsapp", ".txt"),
    Channel.PUSH: ("push", ".json"),
    Channel.IN_APP: ("inapp", ".html"),
}


class TemplateRenderer(ABC):
    """Renders the content of one channel send."""

    @abstractmethod
    def render(self, channel: Channel, template_code: str, data: Dict[str, Any]) -> str:
        """Render content or raise RenderError."""

    @abstractmethod
    def template_exists(self, channel: Channel, template_code: str) -> bool:
        """Whether a template is available for the channel."""


class FileTemplateRenderer(TemplateRenderer):
    """Renders channel templates from files.

    HTML templates are auto-escaped; text and JSON templates are not (JSON
    templates should pass values through the tojson filter). Undefined
    variables raise instead of rendering as empty strings.
    """

    def __init__(self, directory: Optional[str] = None):
        """Initialize the Jinja2 environment.

        Args:
            directory: Optional directory searched before the bundled templates
        """
        loaders = []
        if directory:
            loaders.append(FileSystemLoader(directory))
        loaders.append(PackageLoader("notifier.templates", "bundled"))

        self.env = Environment(
            loader=ChoiceLoader(loaders),
            autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
            undefined=StrictUndefined,
        )

        logger.debug(f"Initialized FileTemplateRenderer (override directory: {directory or 'none'})")

    @staticmethod
    def template_name(channel: Channel, template_code: str) -> str:
        folder, extension = TEMPLATE_LOCATIONS[Channel(channel)]
        return f"{folder}/{template_code}{extension}"

    def template_exists(self, channel: Channel, template_code: str) -> bool:
        try:
            self.env.get_template(self.template_name(channel, template_code))
            return True
        except TemplateNotFound:
            return False

    def render(self, channel: Channel, template_code: str, data: Dict[str, Any]) -> str:
        """Render a channel template with the provided data.

        Args:
            channel: Delivery channel, selects folder and extension
            template_code: Template identifier, e.g. "otp"
            data: Template variables

        Returns:
            Rendered content with surrounding whitespace stripped

        Raises:
            RenderError: If the template is missing or rendering fails
        """
        name = self.template_name(channel, template_code)
        try:
            template = self.env.get_template(name)
            content = template.render(data or {}).strip()
            logger.debug(f"Rendered template {name}")
            return content

        except TemplateNotFound as e:
            error_msg = f"Template not found: {name}"
            logger.error(error_msg)
            raise RenderError(error_msg, template_name=name) from e
        except TemplateError as e:
            error_msg = f"Template rendering failed for {name}: {e}"
            logger.error(error_msg)
            raise RenderError(error_msg, template_name=name) from e
        except Exception as e:
            # Expression errors in the template body, e.g. adding a string to an int
            error_msg = f"Template rendering failed for {name}: {type(e).__name__}: {e}"
            logger.error(error_msg)
            raise RenderError(error_msg, template_name=name) from e

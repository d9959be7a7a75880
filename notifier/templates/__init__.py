"""Channel content rendering from Jinja2 template files."""

from .exceptions import RenderError
from .renderer import TEMPLATE_LOCATIONS, FileTemplateRenderer, TemplateRenderer

__all__ = [
    "FileTemplateRenderer",
    "TemplateRenderer",
    "TEMPLATE_LOCATIONS",
    "RenderError",
]

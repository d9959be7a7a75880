"""Template rendering exceptions."""

from typing import Optional


class RenderError(Exception):
    """Raised when a template is missing or fails to render.

    Attributes:
        template_name: Loader path of the template, if known
    """

    def __init__(self, message: str, template_name: Optional[str] = None):
        super().__init__(message)
        self.template_name = template_name

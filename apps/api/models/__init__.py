"""Models package."""

from .document import Document

"""Generation and notification collaborators."""

from .base import BaseGenerator, BaseNotifier, GenerationInput, Notification, ReviewerDirectory
from .http import HttpGenerator, build_prompt, humanize
from .inmemory import InMemoryNotifier, LoggingNotifier, TemplateGenerator

__all__ = [
    "BaseGenerator",
    "BaseNotifier",
    "GenerationInput",
    "Notification",
    "ReviewerDirectory",
    "HttpGenerator",
    "build_prompt",
    "humanize",
    "InMemoryNotifier",
    "LoggingNotifier",
    "TemplateGenerator",
]

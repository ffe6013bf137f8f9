"""Configuration for the group chat orchestrator."""

from .settings import Settings
from .assistants import load_assistants

__all__ = ["Settings", "load_assistants"]

"""Workflow engine for AI-assisted development loops."""

__version__ = "0.1.0"

__all__ = ["__version__"]

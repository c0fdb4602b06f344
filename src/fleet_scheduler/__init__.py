"""Session pool and task-lifecycle assessment for a fleet of coding agents."""

__version__ = "0.1.0"

__all__ = ["__version__"]

"""Turn model responses into validated plans and execute them against a project."""

__version__ = "0.1.0"

__all__ = ["__version__"]

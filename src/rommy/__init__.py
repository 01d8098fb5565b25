"""rommy — run a command, watch it live, keep a parseable record of it."""

__version__ = "0.1.0"

__all__ = ["__version__"]

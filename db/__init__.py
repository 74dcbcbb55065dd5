"""db package exports for the image index database layer.

Re-exports commonly used symbols to simplify imports in scripts
(e.g. ``from db import Base``).
"""
from .models import Base  # noqa: F401
from .session import get_session, reconfigure  # noqa: F401

__all__ = ["Base", "get_session", "reconfigure"]

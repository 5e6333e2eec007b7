"""HTTP surface for driving resolution sessions."""

from .api import create_app

__all__ = ["create_app"]

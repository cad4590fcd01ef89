"""API route handlers."""
from . import bank_link, connections

__all__ = ["bank_link", "connections"]

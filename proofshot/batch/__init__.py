"""Batched capture execution."""

from .coordinator import BatchCoordinator

__all__ = ["BatchCoordinator"]

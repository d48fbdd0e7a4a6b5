"""Concrete repository implementations using SQLModel."""

from .generation import SQLModelGenerationStore

__all__ = ["SQLModelGenerationStore"]

"""Repository protocol definitions for domain layer."""

from .generation import GenerationStore

__all__ = ["GenerationStore"]

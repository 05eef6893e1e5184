"""Local persistence for problems, chat messages and background images."""

from .database import ProblemDatabase, StorageError
from .images import ImageStore

__all__ = ["ProblemDatabase", "StorageError", "ImageStore"]

from . import flashcards, tasks

__all__ = ["flashcards", "tasks"]

"""ExamHall: exam session timing, lifecycle and grading service."""

__version__ = "0.1.0"

"""Command repetition loops."""

from .repeat_runner import RepeatRunner

__all__ = ["RepeatRunner"]

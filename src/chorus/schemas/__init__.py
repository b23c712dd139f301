"""Pydantic schemas for session state, completion results, and configuration."""

from chorus.schemas.config import ChorusConfig
from chorus.schemas.review import TaskCompletionResult
from chorus.schemas.state import ChorusState, MergeQueueItem

__all__ = ["ChorusConfig", "ChorusState", "MergeQueueItem", "TaskCompletionResult"]

"""Resumable multipart upload coordination."""

from ceremony.upload.coordinator import UploadCoordinator
from ceremony.upload.retry import RetryDecision, RetryPolicy

__all__ = ["UploadCoordinator", "RetryDecision", "RetryPolicy"]

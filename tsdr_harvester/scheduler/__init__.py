"""Scheduling helpers."""

from .apsched_adapter import APSchedulerAdapter, CLEANUP_JOB_ID

__all__ = ["APSchedulerAdapter", "CLEANUP_JOB_ID"]

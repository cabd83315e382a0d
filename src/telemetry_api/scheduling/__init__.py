"""Scheduling utilities for analytics rollups and housekeeping."""

from .config import JobDefinition, ScheduleConfig, load_job_definitions
from .runner import AnalyticsJobScheduler

__all__ = ["AnalyticsJobScheduler", "JobDefinition", "ScheduleConfig", "load_job_definitions"]

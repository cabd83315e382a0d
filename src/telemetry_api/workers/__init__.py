"""Background workers supporting async processing."""

from .presence_sweep import PresenceSweepWorker

__all__ = ["PresenceSweepWorker"]

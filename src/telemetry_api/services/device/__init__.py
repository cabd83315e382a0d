"""User-agent classification."""

from .classifier import APP_BROWSER_NAME, DeviceClassifier, DeviceInfo

__all__ = ["APP_BROWSER_NAME", "DeviceClassifier", "DeviceInfo"]

"""User-agent classification: bot flag, device class, browser and OS."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any

from telemetry_api.core.settings import settings
from telemetry_api.models.visitor import PlatformEnum

APP_BROWSER_NAME = "Telemetry App"

BOT_TOKENS = (
    "googlebot",
    "bingbot",
    "slurp",
    "duckduckbot",
    "baiduspider",
    "yandexbot",
    "facebookexternalhit",
    "twitterbot",
    "linkedinbot",
    "whatsapp",
    "telegrambot",
    "applebot",
    "semrush",
    "ahrefs",
    "mj12bot",
    "dotbot",
    "petalbot",
    "bytespider",
    "gptbot",
    "claudebot",
    "anthropic",
    "crawler",
    "spider",
    "bot/",
    "bot-",
    "headless",
    "phantomjs",
    "selenium",
    "puppeteer",
    "playwright",
    "scraper",
    "wget",
    "curl/",
    "python-requests",
    "axios/",
    "go-http-client",
    "java/",
    "apache-httpclient",
    "http_client",
    "monitoring",
    "pingdom",
    "uptime",
    "newrelic",
    "datadog",
    "gtmetrix",
    "lighthouse",
    "pagespeed",
)

# Tablets first: many tablet agents also carry "mobile"-style tokens.
TABLET_TOKENS = ("ipad", "tablet", "playbook", "silk", "kindle", "sm-t", "gt-p", "surface", "tab ")
MOBILE_TOKENS = (
    "iphone",
    "ipod",
    "android",
    "mobile",
    "blackberry",
    "opera mini",
    "opera mobi",
    "iemobile",
    "windows phone",
    "phone",
    "symbian",
    "palm",
    "webos",
)

WINDOWS_NT_VERSIONS = {
    "10.0": "10/11",
    "6.3": "8.1",
    "6.2": "8",
    "6.1": "7",
    "6.0": "Vista",
    "5.1": "XP",
}

_VERSION = r"(\d+(?:\.\d+)?)"


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


_BROWSER_VERSION_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "Edge": _compile(rf"Edg/{_VERSION}", rf"Edge/{_VERSION}"),
    "Opera": _compile(rf"OPR/{_VERSION}", rf"Opera/{_VERSION}"),
    "Samsung Browser": _compile(rf"SamsungBrowser/{_VERSION}"),
    "Chrome": _compile(rf"Chrome/{_VERSION}"),
    "Firefox": _compile(rf"Firefox/{_VERSION}"),
    "Safari": _compile(rf"Version/{_VERSION}"),
    "Internet Explorer": _compile(rf"MSIE\s{_VERSION}", rf"rv:{_VERSION}"),
}

_IOS_VERSION = re.compile(r"OS\s(\d+[_\d]*)", re.IGNORECASE)
_MACOS_VERSION = re.compile(r"Mac OS X\s(\d+[_\d\.]*)", re.IGNORECASE)
_WINDOWS_VERSION = re.compile(r"Windows NT\s(\d+\.\d+)", re.IGNORECASE)
_ANDROID_VERSION = re.compile(rf"Android\s{_VERSION}", re.IGNORECASE)
_CHROME_OS_VERSION = re.compile(rf"CrOS\s\w+\s{_VERSION}", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class DeviceInfo:
    is_bot: bool
    platform: str
    device_type: str
    browser: str
    browser_version: str | None
    os: str
    os_version: str | None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class DeviceClassifier:
    """Deterministic user-agent parser with a small bounded result cache."""

    def __init__(self, *, app_token: str | None = None, cache_size: int | None = None) -> None:
        self._app_token = (app_token or settings.app_user_agent_token).lower()
        self._cache_size = cache_size or settings.device_cache_size
        self._cache: dict[str, DeviceInfo] = {}
        self._app_version = re.compile(rf"{re.escape(self._app_token)}/{_VERSION}", re.IGNORECASE)

    def classify(self, user_agent: str | None) -> DeviceInfo:
        user_agent = user_agent or ""
        cached = self._cache.get(user_agent)
        if cached is not None:
            return cached

        ua_lower = user_agent.lower()
        device_type = self.device_type(ua_lower)
        browser = self.browser(user_agent)
        os_name = self.operating_system(user_agent)
        info = DeviceInfo(
            is_bot=self.is_bot(user_agent),
            platform=self._platform(browser, device_type),
            device_type=device_type,
            browser=browser,
            browser_version=self.browser_version(user_agent, browser),
            os=os_name,
            os_version=self.os_version(user_agent, os_name),
        )

        if len(self._cache) >= self._cache_size:
            self._cache.pop(next(iter(self._cache)))
        self._cache[user_agent] = info
        return info

    def clear_cache(self) -> None:
        self._cache.clear()

    def is_bot(self, user_agent: str | None) -> bool:
        ua_lower = (user_agent or "").lower()
        if any(token in ua_lower for token in BOT_TOKENS):
            return True
        if len(ua_lower) < 20:
            return True
        return "mozilla" not in ua_lower and "opera" not in ua_lower and self._app_token not in ua_lower

    @staticmethod
    def device_type(ua_lower: str) -> str:
        if any(token in ua_lower for token in TABLET_TOKENS):
            return "tablet"
        for token in MOBILE_TOKENS:
            if token in ua_lower:
                if token == "android" and "mobile" not in ua_lower:
                    return "tablet"
                return "mobile"
        return "desktop"

    def browser(self, user_agent: str) -> str:
        ua_lower = user_agent.lower()
        if self._app_token in ua_lower:
            return APP_BROWSER_NAME
        if "edg/" in ua_lower or "edge/" in ua_lower:
            return "Edge"
        if "opr/" in ua_lower or "opera" in ua_lower:
            return "Opera"
        if "samsungbrowser" in ua_lower:
            return "Samsung Browser"
        if "chrome/" in ua_lower and "chromium" not in ua_lower:
            return "Chrome"
        if "firefox/" in ua_lower:
            return "Firefox"
        if "safari/" in ua_lower and "chrome" not in ua_lower:
            return "Safari"
        if "msie" in ua_lower or "trident/" in ua_lower:
            return "Internet Explorer"
        return "Unknown"

    def browser_version(self, user_agent: str, browser: str) -> str | None:
        if browser == APP_BROWSER_NAME:
            patterns: tuple[re.Pattern[str], ...] = (self._app_version,)
        else:
            patterns = _BROWSER_VERSION_PATTERNS.get(browser, ())
        for pattern in patterns:
            match = pattern.search(user_agent)
            if match:
                return match.group(1)
        return None

    @staticmethod
    def operating_system(user_agent: str) -> str:
        ua_lower = user_agent.lower()
        if "iphone" in ua_lower or "ipad" in ua_lower or "ipod" in ua_lower:
            return "iOS"
        if "macintosh" in ua_lower or "mac os" in ua_lower:
            return "macOS"
        if "windows" in ua_lower:
            return "Windows Phone" if "windows phone" in ua_lower else "Windows"
        if "android" in ua_lower:
            return "Android"
        if "linux" in ua_lower:
            if "ubuntu" in ua_lower:
                return "Ubuntu"
            if "fedora" in ua_lower:
                return "Fedora"
            return "Linux"
        if "cros" in ua_lower:
            return "Chrome OS"
        return "Unknown"

    @staticmethod
    def os_version(user_agent: str, os_name: str) -> str | None:
        if os_name == "iOS":
            match = _IOS_VERSION.search(user_agent)
            return match.group(1).replace("_", ".") if match else None
        if os_name == "macOS":
            match = _MACOS_VERSION.search(user_agent)
            return match.group(1).replace("_", ".") if match else None
        if os_name == "Windows":
            match = _WINDOWS_VERSION.search(user_agent)
            if not match:
                return None
            return WINDOWS_NT_VERSIONS.get(match.group(1), match.group(1))
        if os_name == "Android":
            match = _ANDROID_VERSION.search(user_agent)
            return match.group(1) if match else None
        if os_name == "Chrome OS":
            match = _CHROME_OS_VERSION.search(user_agent)
            return match.group(1) if match else None
        return None

    @staticmethod
    def _platform(browser: str, device_type: str) -> str:
        if browser == APP_BROWSER_NAME:
            return PlatformEnum.IOS_APP.value
        if device_type == "mobile":
            return PlatformEnum.WEB_MOBILE.value
        if device_type == "tablet":
            return PlatformEnum.WEB_TABLET.value
        return PlatformEnum.WEB_DESKTOP.value


__all__ = ["APP_BROWSER_NAME", "BOT_TOKENS", "DeviceClassifier", "DeviceInfo"]

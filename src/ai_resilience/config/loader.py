"""
Settings loader.

Supports:
- Local YAML or JSON files
- The AI_RESILIENCE_CONFIG environment variable (a path or an http(s) URL)
- Remote documents fetched over HTTP(S)
- Environment variable defaults when no document is found
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import httpx
import yaml

from ai_resilience.config.settings import ResilienceSettings
from ai_resilience.errors import ConfigurationError
from ai_resilience.telemetry.logger import get_logger

logger = get_logger(__name__)

CONFIG_ENV_VAR = "AI_RESILIENCE_CONFIG"

_DEFAULT_SEARCH_PATHS = [
    "resilience.yaml",
    "resilience.yml",
    "resilience.json",
    "config/resilience.yaml",
]


def _is_url(location: str) -> bool:
    return location.startswith(("http://", "https://"))


def parse_document(content: str, fmt: str, source: str | None = None) -> dict[str, Any]:
    """Parse settings text.

    Args:
        content: Document text
        fmt: ``json`` or ``yaml``
        source: Where the text came from, for error messages

    Returns:
        The parsed mapping (empty for an empty document)
    """
    try:
        data = json.loads(content) if fmt == "json" else yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Cannot parse settings: {exc}", path=source) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("Settings document must be a mapping", path=source)
    return data


class SettingsLoader:
    """Loads :class:`ResilienceSettings` from files, URLs or the environment.

    The loader resolves a document in the following order:
    1. Explicit location passed to :meth:`load`
    2. AI_RESILIENCE_CONFIG environment variable
    3. Common file names in the working directory
    4. Environment variables alone (:meth:`ResilienceSettings.from_env`)

    Example:
        >>> loader = SettingsLoader()
        >>> settings = await loader.load("config/resilience.yaml")
        >>> settings.boundaries["tool_execution"].isolation_threshold
        4
    """

    def __init__(self, timeout_seconds: float = 10.0, cache_enabled: bool = True) -> None:
        self._timeout = timeout_seconds
        self._cache_enabled = cache_enabled
        self._cache: dict[str, ResilienceSettings] = {}

    def load_file(self, path: str | Path) -> ResilienceSettings:
        """Load settings from a local file.

        Raises:
            ConfigurationError: If the file is missing or invalid
        """
        path = Path(path)
        key = f"file:{path.resolve()}"
        if self._cache_enabled and key in self._cache:
            return self._cache[key]

        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Cannot read settings: {exc}", path=str(path)) from exc

        fmt = "json" if path.suffix == ".json" else "yaml"
        settings = ResilienceSettings.from_dict(parse_document(content, fmt, str(path)))
        self._report(settings, str(path))
        if self._cache_enabled:
            self._cache[key] = settings
        return settings

    async def load_url(self, url: str) -> ResilienceSettings:
        """Fetch settings over HTTP(S).

        Raises:
            ConfigurationError: On transport errors, non-200 responses or
                invalid documents
        """
        key = f"url:{url}"
        if self._cache_enabled and key in self._cache:
            return self._cache[key]

        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise ConfigurationError(f"Failed to fetch settings: {exc}", path=url) from exc
        if response.status_code != 200:
            raise ConfigurationError(
                f"Failed to fetch settings (status {response.status_code})", path=url
            )

        content_type = response.headers.get("content-type", "")
        fmt = "json" if url.endswith(".json") or "json" in content_type else "yaml"
        settings = ResilienceSettings.from_dict(parse_document(response.text, fmt, url))
        self._report(settings, url)
        if self._cache_enabled:
            self._cache[key] = settings
        return settings

    async def load(self, location: str | Path | None = None) -> ResilienceSettings:
        """Resolve and load settings.

        Args:
            location: File path or URL; resolved automatically if None

        Returns:
            Loaded settings
        """
        location = location or os.getenv(CONFIG_ENV_VAR)
        if location is None:
            for candidate in _DEFAULT_SEARCH_PATHS:
                if Path(candidate).exists():
                    location = candidate
                    break

        if location is None:
            logger.debug("No settings document found, using environment")
            return ResilienceSettings.from_env()
        if isinstance(location, str) and _is_url(location):
            return await self.load_url(location)
        return self.load_file(location)

    def clear_cache(self) -> None:
        self._cache.clear()

    def _report(self, settings: ResilienceSettings, source: str) -> None:
        for warning in settings.validate():
            logger.warning("Settings warning", source=source, problem=warning)
        logger.info("Settings loaded", source=source)

"""Configuration for the aiswitch completion gateway.

Reads a JSON config file containing provider profiles (upstream URL,
credential, parameter presets), the active provider selection, and the
locations of the audit database and log file. API keys may be given inline
or resolved from an environment variable.

The loaded configuration is wrapped in a GatewaySelection, which guards it
with a single lock. Request handlers never see the live objects; they take a
deep-copied snapshot of the active profile so a concurrent config edit cannot
affect a request already in flight.
"""

import asyncio
import copy
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

DEFAULT_DB_PATH = "data/aiswitch.sqlite"
DEFAULT_LOG_FILE = "logs/aiswitch.log"
DEFAULT_UPSTREAM_TIMEOUT = 60.0


class NoActiveProvider(Exception):
    """Raised when no provider is selected or the selection is dangling."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


class SelectionError(Exception):
    """Raised when a config mutation is rejected or cannot be saved."""

    def __init__(self, detail: str, status_code: int = 404) -> None:
        self.detail = detail
        self.status_code = status_code
        super().__init__(detail)


@dataclass
class Preset:
    """A named set of top-level overrides applied to outbound request bodies."""

    id: str
    name: str
    overrides: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "overrides": dict(self.overrides)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Preset":
        overrides = data.get("overrides") or {}
        if not isinstance(overrides, dict):
            overrides = {}
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            overrides=dict(overrides),
        )


@dataclass
class ProviderProfile:
    """Configuration for a single upstream OpenAI-compatible provider.

    ``api_key`` holds an inline credential. ``api_key_env`` names an
    environment variable to read the credential from instead; only the name
    is kept, so the secret is never written back to the config file.
    """

    id: str
    name: str
    base_url: str
    api_key: str = ""
    presets: List[Preset] = field(default_factory=list)
    active_preset_id: Optional[str] = None
    api_key_env: Optional[str] = None

    @property
    def api_root(self) -> str:
        """Base URL without a trailing slash."""
        return self.base_url.rstrip("/")

    def find_preset(self, preset_id: str) -> Optional[Preset]:
        for preset in self.presets:
            if preset.id == preset_id:
                return preset
        return None

    def resolved(self) -> "ProviderProfile":
        """Return a copy whose ``api_key`` is the credential to send upstream.

        The inline key wins; otherwise the environment variable is read now.
        """
        profile = copy.deepcopy(self)
        if not profile.api_key and profile.api_key_env:
            profile.api_key = os.getenv(profile.api_key_env, "")
        return profile

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "base_url": self.base_url,
        }
        if self.api_key or not self.api_key_env:
            data["api_key"] = self.api_key
        if self.api_key_env:
            data["api_key_env"] = self.api_key_env
        data["presets"] = [p.to_dict() for p in self.presets]
        if self.active_preset_id is not None:
            data["active_preset_id"] = self.active_preset_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderProfile":
        """Build a profile from a config mapping.

        Accepts ``api_url``/``preset`` as aliases of ``base_url``/
        ``active_preset_id``.
        """
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            base_url=data.get("base_url") or data.get("api_url") or "",
            api_key=data.get("api_key") or "",
            presets=[Preset.from_dict(p) for p in data.get("presets", [])],
            active_preset_id=data.get("active_preset_id", data.get("preset")),
            api_key_env=data.get("api_key_env") or None,
        )


@dataclass
class GatewayConfig:
    """Top-level gateway configuration."""

    providers: List[ProviderProfile] = field(default_factory=list)
    active_provider_id: Optional[str] = None
    db_path: str = DEFAULT_DB_PATH
    log_file: str = DEFAULT_LOG_FILE
    log_level: str = "INFO"
    upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT

    def find_provider(self, provider_id: str) -> Optional[ProviderProfile]:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "providers": [p.to_dict() for p in self.providers],
            "active_provider_id": self.active_provider_id,
            "db_path": self.db_path,
            "log_file": self.log_file,
            "log_level": self.log_level,
            "upstream_timeout": self.upstream_timeout,
        }


def load_config(path: Union[str, Path]) -> GatewayConfig:
    """Load gateway configuration from a JSON file.

    A missing file is not an error: the gateway starts with no providers and
    the default storage locations, and the file is created on the first
    config change.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved GatewayConfig instance.

    Raises:
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        return GatewayConfig()

    with open(path) as f:
        try:
            raw: Dict[str, Any] = json.load(f)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid config file {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")

    try:
        providers = [ProviderProfile.from_dict(p) for p in raw.get("providers", [])]
    except (KeyError, TypeError, AttributeError) as exc:
        raise ValueError(f"Invalid provider entry in {path}: {exc}") from exc

    return GatewayConfig(
        providers=providers,
        active_provider_id=raw.get("active_provider_id", raw.get("provider")),
        db_path=str(raw.get("db_path", DEFAULT_DB_PATH)),
        log_file=str(raw.get("log_file", DEFAULT_LOG_FILE)),
        log_level=str(raw.get("log_level", "INFO")),
        upstream_timeout=float(raw.get("upstream_timeout", DEFAULT_UPSTREAM_TIMEOUT)),
    )


def save_config(config: GatewayConfig, path: Union[str, Path]) -> None:
    """Write the configuration back to ``path`` as JSON."""
    path = Path(path)
    os.makedirs(path.parent, exist_ok=True)
    with open(path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)


class GatewaySelection:
    """Lock-guarded provider configuration shared by all request handlers.

    Every read returns copies. A mutation edits a copy of the config under the
    lock, writes it to the config file when one is set, and only then
    replaces the live config, so a failed write leaves nothing changed.
    """

    def __init__(
        self, config: GatewayConfig, config_path: Optional[Union[str, Path]] = None
    ) -> None:
        self._config = config
        self._config_path = config_path
        self._lock = asyncio.Lock()

    async def active_profile(self) -> ProviderProfile:
        """Return a snapshot of the active provider profile, credential resolved.

        Raises:
            NoActiveProvider: If nothing is selected or the selected id is unknown.
        """
        async with self._lock:
            provider_id = self._config.active_provider_id
            if provider_id is None:
                raise NoActiveProvider("No provider is selected.")
            provider = self._config.find_provider(provider_id)
            if provider is None:
                raise NoActiveProvider(
                    "Selected provider '{}' is not configured.".format(provider_id)
                )
            return provider.resolved()

    async def snapshot(self) -> GatewayConfig:
        async with self._lock:
            return copy.deepcopy(self._config)

    async def set_active_provider(self, provider_id: str) -> None:
        """Select a provider; an empty id clears the selection."""
        async with self._lock:
            config = copy.deepcopy(self._config)
            if not provider_id:
                config.active_provider_id = None
            elif config.find_provider(provider_id) is not None:
                config.active_provider_id = provider_id
            else:
                raise SelectionError("Service not found")
            self._commit(config)

    async def add_provider(self, profile: ProviderProfile) -> None:
        async with self._lock:
            config = copy.deepcopy(self._config)
            if config.find_provider(profile.id) is not None:
                raise SelectionError("Service already exists", status_code=409)
            profile = copy.deepcopy(profile)
            if profile.active_preset_id and not profile.find_preset(
                profile.active_preset_id
            ):
                profile.active_preset_id = None
            config.providers.append(profile)
            self._commit(config)

    async def update_provider(self, provider_id: str, changes: Dict[str, Any]) -> None:
        """Apply a partial update.

        Only name, base_url, api_key and api_key_env are editable.
        """
        async with self._lock:
            config = copy.deepcopy(self._config)
            provider = _require_provider(config, provider_id, "Service not found")
            for key, value in changes.items():
                if not isinstance(value, str):
                    continue
                if key == "name":
                    provider.name = value
                elif key in ("base_url", "api_url"):
                    provider.base_url = value
                elif key == "api_key":
                    provider.api_key = value
                elif key == "api_key_env":
                    provider.api_key_env = value or None
            self._commit(config)

    async def delete_provider(self, provider_id: str) -> None:
        async with self._lock:
            config = copy.deepcopy(self._config)
            provider = _require_provider(config, provider_id, "Provider not found")
            if config.active_provider_id == provider_id:
                config.active_provider_id = None
            config.providers.remove(provider)
            self._commit(config)

    async def set_active_preset(self, provider_id: str, preset_id: str) -> None:
        """Activate a preset on a provider; an empty id clears it."""
        async with self._lock:
            config = copy.deepcopy(self._config)
            provider = _require_provider(config, provider_id, "Provider not found")
            if not preset_id:
                provider.active_preset_id = None
            elif provider.find_preset(preset_id) is not None:
                provider.active_preset_id = preset_id
            else:
                raise SelectionError("Preset not found")
            self._commit(config)

    async def add_preset(self, provider_id: str, preset: Preset) -> None:
        async with self._lock:
            config = copy.deepcopy(self._config)
            provider = _require_provider(config, provider_id, "Provider not found")
            if provider.find_preset(preset.id) is not None:
                raise SelectionError("Preset already exists", status_code=409)
            provider.presets.append(copy.deepcopy(preset))
            self._commit(config)

    async def update_preset(
        self,
        provider_id: str,
        preset_id: str,
        name: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Rename a preset and/or merge new override keys into it."""
        async with self._lock:
            config = copy.deepcopy(self._config)
            provider = _require_provider(config, provider_id, "Provider not found")
            preset = provider.find_preset(preset_id)
            if preset is None:
                raise SelectionError("Preset not found")
            if name is not None:
                preset.name = name
            if overrides:
                preset.overrides.update(copy.deepcopy(overrides))
            self._commit(config)

    def _commit(self, config: GatewayConfig) -> None:
        """Persist ``config`` and make it live.

        Raises:
            SelectionError: With status 500 if the config file cannot be written.
        """
        if self._config_path is not None:
            try:
                save_config(config, self._config_path)
            except OSError as exc:
                raise SelectionError(
                    "Failed to save configuration: {}".format(exc), status_code=500
                ) from exc
        self._config = config


def _require_provider(
    config: GatewayConfig, provider_id: str, message: str
) -> ProviderProfile:
    provider = config.find_provider(provider_id)
    if provider is None:
        raise SelectionError(message)
    return provider

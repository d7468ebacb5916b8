"""Request and response models for the aiswitch HTTP surface."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from aiswitch.config import Preset, ProviderProfile


class PresetIn(BaseModel):
    """A preset as submitted to the config endpoints."""

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    overrides: Dict[str, Any] = Field(default_factory=dict)

    def to_preset(self) -> Preset:
        return Preset(id=self.id, name=self.name, overrides=dict(self.overrides))


class PresetUpdate(BaseModel):
    """Partial preset update; overrides are merged key by key."""

    name: Optional[str] = None
    overrides: Optional[Dict[str, Any]] = None


class ProviderIn(BaseModel):
    """A provider profile as submitted to the config endpoints."""

    name: str = Field(..., min_length=1)
    base_url: Optional[str] = Field(default=None, description="Upstream API root")
    api_url: Optional[str] = Field(default=None, description="Alias of base_url")
    api_key: str = ""
    api_key_env: Optional[str] = Field(
        default=None, description="Environment variable holding the API key"
    )
    presets: List[PresetIn] = Field(default_factory=list)
    active_preset_id: Optional[str] = None

    def to_profile(self, provider_id: str) -> ProviderProfile:
        return ProviderProfile(
            id=provider_id,
            name=self.name,
            base_url=self.base_url or self.api_url or "",
            api_key=self.api_key,
            api_key_env=self.api_key_env or None,
            presets=[p.to_preset() for p in self.presets],
            active_preset_id=self.active_preset_id,
        )


class MessageResponse(BaseModel):
    """Outcome of a config mutation."""

    message: str


class LogPage(BaseModel):
    """One page of the audit log listing."""

    rowCount: int
    logs: List[Dict[str, Any]]


class ErrorDetail(BaseModel):
    """Structured error detail."""

    type: str
    message: str


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorDetail

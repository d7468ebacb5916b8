"""Shared test fixtures for the aiswitch gateway tests."""

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from aiswitch.audit import AuditLog
from aiswitch.config import GatewayConfig, GatewaySelection, Preset, ProviderProfile

BASE_URL = "https://upstream.example.com/v1"


def make_profile(
    overrides: Optional[Dict[str, Any]] = None,
    active: bool = True,
) -> ProviderProfile:
    """Build a test provider, optionally with an active preset."""
    presets = []
    active_preset_id = None
    if overrides is not None:
        presets.append(Preset(id="p1", name="Preset 1", overrides=overrides))
        if active:
            active_preset_id = "p1"
    return ProviderProfile(
        id="test-provider",
        name="Test Provider",
        base_url=BASE_URL,
        api_key="sk-test",
        presets=presets,
        active_preset_id=active_preset_id,
    )


def make_selection(profile: Optional[ProviderProfile] = None) -> GatewaySelection:
    profile = profile or make_profile()
    config = GatewayConfig(providers=[profile], active_provider_id=profile.id)
    return GatewaySelection(config)


def sse(payload: Dict[str, Any]) -> bytes:
    """Encode one server-sent event frame."""
    return "data: {}\n\n".format(json.dumps(payload)).encode("utf-8")


class FakeUpstream:
    """Scripted OpenAI-compatible provider for httpx.MockTransport.

    Each endpoint path (``completions``, ``chat/completions``, ``tokenize``,
    ``models``) maps to a callable that receives the request and returns an
    httpx.Response. Unscripted paths answer 404. Every request is recorded.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def on(self, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[path] = handler

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if self._path(r) == path]

    def bodies(self, path: str) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.calls(path)]

    @staticmethod
    def _path(request: httpx.Request) -> str:
        prefix = httpx.URL(BASE_URL).path.rstrip("/") + "/"
        return request.url.path[len(prefix):]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(self._path(request))
        if handler is None:
            return httpx.Response(404, json={"error": "not found"})
        result = handler(request)
        if hasattr(result, "__await__"):
            result = await result
        return result

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture()
def audit_log(tmp_path: Path) -> AuditLog:
    return AuditLog(str(tmp_path / "audit.sqlite"))

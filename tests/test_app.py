"""End-to-end tests for the HTTP surface.

The app runs in-process through ASGITransport; the upstream provider is a
scripted MockTransport.
"""

import json
from pathlib import Path
from typing import Any, Dict

import httpx
import pytest
from conftest import BASE_URL, FakeUpstream, sse
from httpx import ASGITransport, AsyncClient

from aiswitch import app as app_module
from aiswitch.app import app
from aiswitch.bridge import STREAM_ERROR_SENTINEL


def _provider(active_preset: bool = False) -> Dict[str, Any]:
    provider: Dict[str, Any] = {
        "id": "test-provider",
        "name": "Test Provider",
        "base_url": BASE_URL,
        "api_key": "sk-test",
        "presets": [{"id": "p1", "name": "Pinned", "overrides": {"model": "m-pinned"}}],
    }
    if active_preset:
        provider["active_preset_id"] = "p1"
    return provider


@pytest.fixture()
def config_path(tmp_path: Path) -> Path:
    config = {
        "providers": [_provider()],
        "active_provider_id": "test-provider",
        "db_path": str(tmp_path / "audit.sqlite"),
        "log_file": str(tmp_path / "test.log"),
    }
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config))
    return path


@pytest.fixture(autouse=True)
def _reset_app_state(
    config_path: Path, upstream: FakeUpstream, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Reset the app's global state and point it at the test config and upstream."""
    monkeypatch.setattr(app_module, "CONFIG_PATH", str(config_path))
    monkeypatch.setattr(app_module, "_config", None)
    monkeypatch.setattr(app_module, "_selection", None)
    monkeypatch.setattr(app_module, "_audit_log", None)
    monkeypatch.setattr(app_module, "_forwarder", None)
    monkeypatch.setattr(app_module, "_client", upstream.client())


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


class TestProxy:
    @pytest.mark.asyncio
    async def test_buffered_chat(self, upstream: FakeUpstream) -> None:
        response = {
            "choices": [{"message": {"role": "assistant", "content": "hi"}}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 8},
        }
        upstream.on("chat/completions", lambda r: httpx.Response(200, json=response))

        async with _client() as client:
            resp = await client.post(
                "/api/v1/chat/completions",
                json={"messages": [{"role": "user", "content": "hello"}]},
            )
            assert resp.status_code == 200
            assert resp.json() == response

            logs = await client.get("/api/logs")
            entry = await client.get("/api/logs/1")

        assert logs.json()["rowCount"] == 1
        summary = logs.json()["logs"][0]
        assert summary["chat"] is True
        assert summary["model"] == "gpt-3.5-turbo"
        assert summary["prompt_tokens"] == 12
        record = entry.json()
        assert record["request"]["messages"][0]["content"] == "hello"
        assert record["response"] == response
        assert upstream.calls("tokenize") == []

    @pytest.mark.asyncio
    async def test_streamed_completion(self, upstream: FakeUpstream) -> None:
        chunks = [
            sse({"choices": [{"text": "a"}]}),
            sse({"choices": [{"text": "b"}]}),
            sse({"choices": [], "usage": {"prompt_tokens": 1, "completion_tokens": 2}}),
        ]

        async def stream() -> Any:
            for chunk in chunks:
                yield chunk

        upstream.on(
            "completions",
            lambda r: httpx.Response(
                200, headers={"content-type": "text/event-stream"}, content=stream()
            ),
        )

        async with _client() as client:
            resp = await client.post(
                "/api/v1/completions", json={"prompt": "x", "stream": True}
            )
            await app_module.get_forwarder().drain()
            entry = await client.get("/api/logs/1")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.text == "".join(c.decode() for c in chunks)
        record = entry.json()
        assert record["chat"] is False
        assert record["completion_tokens"] == 2
        assert len(record["response"]) == 3

    @pytest.mark.asyncio
    async def test_stream_upstream_failure(self, upstream: FakeUpstream) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        upstream.on("completions", refuse)
        async with _client() as client:
            resp = await client.post(
                "/api/v1/completions", json={"prompt": "x", "stream": True}
            )
            await app_module.get_forwarder().drain()

        assert resp.status_code == 200
        assert resp.text == STREAM_ERROR_SENTINEL

    @pytest.mark.asyncio
    async def test_buffered_upstream_failure_is_503(self, upstream: FakeUpstream) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        upstream.on("completions", refuse)
        async with _client() as client:
            resp = await client.post("/api/v1/completions", json={"prompt": "x"})

        assert resp.status_code == 503
        assert resp.json()["error"]["type"] == "upstream_unavailable"

    @pytest.mark.asyncio
    async def test_no_active_provider_is_503(self) -> None:
        async with _client() as client:
            await client.post("/api/config/active-provider", content="")
            resp = await client.post("/api/v1/completions", json={"prompt": "x"})
            models = await client.get("/api/v1/models")

        assert resp.status_code == 503
        assert resp.json()["error"]["type"] == "no_active_provider"
        assert models.status_code == 503

    @pytest.mark.asyncio
    async def test_audit_unavailable_refuses_request(self, upstream: FakeUpstream) -> None:
        upstream.on("completions", lambda r: httpx.Response(200, json={"choices": []}))
        await app_module.get_audit_log().close()

        async with _client() as client:
            resp = await client.post("/api/v1/completions", json={"prompt": "x"})

        assert resp.status_code == 503
        assert resp.json()["error"]["type"] == "audit_unavailable"
        assert upstream.calls("completions") == []

    @pytest.mark.asyncio
    async def test_non_object_body_rejected(self) -> None:
        async with _client() as client:
            resp = await client.post("/api/v1/completions", json=["not", "an", "object"])
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_models_filtered_by_pinned_preset(self, upstream: FakeUpstream) -> None:
        listing = {"data": [{"id": "m-pinned"}, {"id": "other"}]}
        upstream.on("models", lambda r: httpx.Response(200, json=listing))

        async with _client() as client:
            unfiltered = await client.get("/api/v1/models")
            await client.post(
                "/api/config/providers/test-provider/active-preset", content="p1"
            )
            filtered = await client.get("/api/v1/models")

        assert len(unfiltered.json()["data"]) == 2
        assert filtered.json()["data"] == [{"id": "m-pinned"}]


class TestConfigEndpoints:
    @pytest.mark.asyncio
    async def test_provider_lifecycle(self, config_path: Path) -> None:
        new_provider = {
            "name": "Second",
            "api_url": "http://second/v1",
            "api_key": "sk-2",
            "presets": [],
        }
        async with _client() as client:
            added = await client.post("/api/config/providers/second", json=new_provider)
            duplicate = await client.post(
                "/api/config/providers/second", json=new_provider
            )
            selected = await client.post("/api/config/active-provider", content="second")
            updated = await client.put(
                "/api/config/providers/second", json={"name": "Renamed"}
            )
            providers = await client.get("/api/config/providers")
            active = await client.get("/api/config/active-provider")
            deleted = await client.delete("/api/config/providers/second")
            active_after = await client.get("/api/config/active-provider")

        assert added.json() == {"message": "Service added successfully"}
        assert duplicate.status_code == 409
        assert selected.json() == {"message": "Service updated successfully"}
        assert updated.status_code == 200
        names = {p["id"]: p["name"] for p in providers.json()}
        assert names == {"test-provider": "Test Provider", "second": "Renamed"}
        assert active.json() == "second"
        assert deleted.json() == {"message": "Service deleted successfully"}
        assert active_after.json() is None

        saved = json.loads(config_path.read_text())
        assert [p["id"] for p in saved["providers"]] == ["test-provider"]

    @pytest.mark.asyncio
    async def test_unknown_provider(self) -> None:
        async with _client() as client:
            selected = await client.post("/api/config/active-provider", content="ghost")
            updated = await client.put("/api/config/providers/ghost", json={"name": "x"})
            deleted = await client.delete("/api/config/providers/ghost")

        assert selected.status_code == 404
        assert selected.json() == {"message": "Service not found"}
        assert updated.json() == {"message": "Service not found"}
        assert deleted.json() == {"message": "Provider not found"}

    @pytest.mark.asyncio
    async def test_invalid_utf8_body_is_not_a_server_error(self) -> None:
        async with _client() as client:
            resp = await client.post(
                "/api/config/active-provider", content=b"\xff\xfe"
            )

        assert resp.status_code == 404
        assert resp.json() == {"message": "Service not found"}

    @pytest.mark.asyncio
    async def test_env_key_stays_out_of_config_file(
        self, config_path: Path, upstream: FakeUpstream, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("SECOND_API_KEY", "sk-secret-from-env")
        upstream.on("completions", lambda r: httpx.Response(200, json={"choices": []}))

        async with _client() as client:
            await client.post(
                "/api/config/providers/second",
                json={"name": "Second", "base_url": BASE_URL, "api_key_env": "SECOND_API_KEY"},
            )
            await client.post("/api/config/active-provider", content="second")
            await client.post("/api/v1/completions", json={"prompt": "x"})

        assert "sk-secret-from-env" not in config_path.read_text()
        sent = upstream.calls("completions")[0]
        assert sent.headers["Authorization"] == "Bearer sk-secret-from-env"

    @pytest.mark.asyncio
    async def test_preset_endpoints(self, upstream: FakeUpstream) -> None:
        upstream.on("completions", lambda r: httpx.Response(200, json={"choices": []}))

        async with _client() as client:
            added = await client.post(
                "/api/config/providers/test-provider/presets",
                json={"id": "cold", "name": "Cold", "overrides": {"temperature": 0}},
            )
            updated = await client.put(
                "/api/config/providers/test-provider/presets/cold",
                json={"overrides": {"max_tokens": 8}},
            )
            activated = await client.post(
                "/api/config/providers/test-provider/active-preset", content="cold"
            )
            missing = await client.post(
                "/api/config/providers/test-provider/active-preset", content="ghost"
            )
            await client.post("/api/v1/completions", json={"prompt": "x"})
            cleared = await client.post(
                "/api/config/providers/test-provider/active-preset", content=""
            )
            config = await client.get("/api/config")

        assert added.json() == {"message": "Preset added successfully"}
        assert updated.json() == {"message": "Preset updated successfully"}
        assert activated.json() == {"message": "Preset updated successfully"}
        assert missing.json() == {"message": "Preset not found"}
        assert cleared.json() == {"message": "Preset removed successfully"}
        assert upstream.bodies("completions")[0] == {
            "prompt": "x",
            "temperature": 0,
            "max_tokens": 8,
        }
        provider = config.json()["providers"][0]
        assert "active_preset_id" not in provider
        assert provider["presets"][1]["overrides"] == {"temperature": 0, "max_tokens": 8}


class TestLogEndpoints:
    @pytest.mark.asyncio
    async def test_missing_log_entry(self) -> None:
        async with _client() as client:
            resp = await client.get("/api/logs/42")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_bad_paging_parameters_use_defaults(self) -> None:
        async with _client() as client:
            resp = await client.get("/api/logs", params={"page": "x", "size": "y", "sort": "bogus"})
        assert resp.status_code == 200
        assert resp.json() == {"rowCount": 0, "logs": []}

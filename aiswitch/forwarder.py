"""Forwarding engine: send completion requests upstream and account for them.

Request flow:
1. Snapshot the active provider profile
2. Apply the active preset to the outbound body
3. Insert the audit row (always before dispatch)
4. Dispatch upstream, buffered or streamed
5. Extract usage, falling back to the provider's tokenizer
6. Compute throughput and complete the audit row

Streamed responses are consumed by a background task that feeds a bounded
StreamBridge. The caller drains the bridge while the task does the usage
bookkeeping, so the audit write never delays the caller's last chunk.
"""

import asyncio
import copy
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Union

import httpx

from aiswitch.audit import AuditLog
from aiswitch.bridge import DEFAULT_CAPACITY, StreamBridge
from aiswitch.config import GatewaySelection, ProviderProfile
from aiswitch.presets import apply_preset, force_include_usage, pinned_model
from aiswitch.telemetry import log_exchange
from aiswitch.tokenizer import count_tokens
from aiswitch.usage import (
    CompletionPromptView,
    FrameDecoder,
    Route,
    UsageTracker,
    chat_prompt_text,
    tokens_per_second,
)

logger = logging.getLogger("aiswitch")


class UpstreamUnavailable(Exception):
    """Raised when the upstream provider cannot be reached or read."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


@dataclass
class PreparedRequest:
    """An outbound request with the preset applied and its prompt classified."""

    route: Route
    provider: ProviderProfile
    body: Dict[str, Any]
    model: str
    stream: bool
    prompt_text: str
    prompt_tokens: Optional[int] = None

    @property
    def url(self) -> str:
        return "{}/{}".format(self.provider.api_root, self.route.path)

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": "Bearer {}".format(self.provider.api_key)}


class Forwarder:
    """Drives completion exchanges between callers and the active provider."""

    def __init__(
        self,
        selection: GatewaySelection,
        audit: AuditLog,
        client: httpx.AsyncClient,
        stream_capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        self._selection = selection
        self._audit = audit
        self._client = client
        self._stream_capacity = stream_capacity
        self._tasks: Set["asyncio.Task[None]"] = set()

    async def prepare(self, route: Route, body: Dict[str, Any]) -> PreparedRequest:
        """Build the outbound request for ``body`` on ``route``.

        Raises:
            NoActiveProvider: If no usable provider is selected.
        """
        provider = await self._selection.active_profile()
        outbound = apply_preset(provider, copy.deepcopy(body))

        model = outbound.get("model")
        if not isinstance(model, str):
            model = route.default_model
        stream = outbound.get("stream") is True
        if stream:
            force_include_usage(outbound)

        if route is Route.COMPLETIONS:
            prompt = CompletionPromptView.classify(outbound.get("prompt"))
            prompt_text = prompt.prompt_text()
            prompt_tokens = prompt.token_count()
        else:
            prompt_text = chat_prompt_text(outbound.get("messages"))
            prompt_tokens = None

        return PreparedRequest(
            route=route,
            provider=provider,
            body=outbound,
            model=model,
            stream=stream,
            prompt_text=prompt_text,
            prompt_tokens=prompt_tokens,
        )

    async def forward(
        self, route: Route, body: Dict[str, Any]
    ) -> Union[str, StreamBridge]:
        """Forward a caller request upstream.

        Returns:
            The raw upstream body for buffered requests, or a StreamBridge the
            caller iterates for streamed ones.

        Raises:
            NoActiveProvider: If no usable provider is selected.
            AuditUnavailable: If the audit row cannot be created.
            UpstreamUnavailable: If a buffered upstream call fails.
        """
        prepared = await self.prepare(route, body)
        record_id = await self._audit.insert(
            provider_id=prepared.provider.id,
            is_chat=route.is_chat,
            request_body=json.dumps(prepared.body),
            model=prepared.model,
        )
        started = time.monotonic()

        if prepared.stream:
            return self._start_stream(prepared, record_id, started)
        return await self._forward_buffered(prepared, record_id, started)

    async def _forward_buffered(
        self, prepared: PreparedRequest, record_id: int, started: float
    ) -> str:
        try:
            resp = await self._client.post(
                prepared.url, json=prepared.body, headers=prepared.headers
            )
            text = resp.text
        except httpx.HTTPError as exc:
            self._log(prepared, record_id, "upstream_error", error=str(exc))
            raise UpstreamUnavailable(
                "Failed to reach provider: {}".format(exc)
            ) from exc
        tracker = UsageTracker(
            prepared.route, streamed=False, prompt_tokens=prepared.prompt_tokens
        )
        try:
            tracker.feed(json.loads(text))
        except ValueError:
            logger.debug("Upstream body for request %d is not JSON", record_id)

        await self._finish(prepared, record_id, tracker, text, started)
        return text

    def _start_stream(
        self, prepared: PreparedRequest, record_id: int, started: float
    ) -> StreamBridge:
        bridge = StreamBridge(self._stream_capacity)
        task = asyncio.create_task(self._run_stream(prepared, record_id, started, bridge))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return bridge

    def _task_done(self, task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Streaming task failed", exc_info=task.exception()
            )

    async def _run_stream(
        self,
        prepared: PreparedRequest,
        record_id: int,
        started: float,
        bridge: StreamBridge,
    ) -> None:
        try:
            await self._pump(prepared, record_id, started, bridge)
        finally:
            await bridge.close()

    async def _pump(
        self,
        prepared: PreparedRequest,
        record_id: int,
        started: float,
        bridge: StreamBridge,
    ) -> None:
        tracker = UsageTracker(
            prepared.route, streamed=True, prompt_tokens=prepared.prompt_tokens
        )
        decoder = FrameDecoder()
        frames: List[Dict[str, Any]] = []

        try:
            async with self._client.stream(
                "POST", prepared.url, json=prepared.body, headers=prepared.headers
            ) as resp:
                async for chunk in resp.aiter_text():
                    if not chunk:
                        continue
                    for frame in decoder.feed(chunk):
                        tracker.feed(frame)
                        frames.append(frame)
                    await bridge.send(chunk)
        except httpx.HTTPError as exc:
            self._log(prepared, record_id, "upstream_error", error=str(exc))
            await bridge.fail()
            return

        for frame in decoder.flush():
            tracker.feed(frame)
            frames.append(frame)
        await bridge.close()

        if bridge.cancelled:
            logger.info("Caller left before request %d finished streaming", record_id)
        await self._finish(
            prepared, record_id, tracker, json.dumps(frames), started
        )

    async def _finish(
        self,
        prepared: PreparedRequest,
        record_id: int,
        tracker: UsageTracker,
        response_body: str,
        started: float,
    ) -> None:
        """Resolve missing counts, compute throughput and complete the audit row.

        Elapsed time runs from dispatch until the counts are resolved, so it
        includes any tokenizer round trips.
        """
        prompt_tokens = tracker.prompt_tokens
        completion_tokens = tracker.completion_tokens

        if prompt_tokens is None:
            prompt_tokens = await count_tokens(
                self._client, prepared.provider, prepared.model, prepared.prompt_text
            )
        if completion_tokens is None:
            completion_tokens = await count_tokens(
                self._client, prepared.provider, prepared.model, tracker.text
            )
        elapsed = time.monotonic() - started

        speed = None
        if prompt_tokens is not None:
            speed = tokens_per_second(completion_tokens, elapsed)

        await self._audit.complete(
            record_id,
            response_body=response_body,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            tokens_per_second=speed,
        )
        self._log(
            prepared,
            record_id,
            "success",
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
            },
            speed=speed,
        )

    async def list_models(self) -> Dict[str, Any]:
        """Proxy the provider's model listing.

        When the active preset pins a model, only that entry is kept.

        Raises:
            NoActiveProvider: If no usable provider is selected.
            UpstreamUnavailable: If the provider cannot be reached.
        """
        provider = await self._selection.active_profile()
        url = "{}/models".format(provider.api_root)
        try:
            resp = await self._client.get(
                url, headers={"Authorization": "Bearer {}".format(provider.api_key)}
            )
            text = resp.text
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(
                "Failed to reach provider: {}".format(exc)
            ) from exc

        try:
            data = json.loads(text)
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        pinned = pinned_model(provider)
        models = data.get("data")
        if pinned is not None and isinstance(models, list):
            data["data"] = [
                m
                for m in models
                if not (isinstance(m, dict) and isinstance(m.get("id"), str))
                or m["id"] == pinned
            ]
        return data

    async def drain(self) -> None:
        """Wait for every background streaming task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _log(
        self,
        prepared: PreparedRequest,
        record_id: int,
        outcome: str,
        usage: Optional[Dict[str, Any]] = None,
        speed: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        log_exchange(
            request_id=record_id,
            provider=prepared.provider.id,
            route=prepared.route.path,
            model=prepared.model,
            stream=prepared.stream,
            outcome=outcome,
            usage=usage,
            speed=speed,
            error=error,
        )

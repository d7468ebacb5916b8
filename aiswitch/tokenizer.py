"""Best-effort token counting through the provider's ``/tokenize`` endpoint.

Used only when a provider response carries no usage. Any failure is a soft
miss: the caller gets None and the corresponding count stays unknown.
"""

import logging
from typing import List, Optional

import httpx

from aiswitch.config import ProviderProfile
from aiswitch.presets import apply_preset

logger = logging.getLogger("aiswitch")


async def tokenize(
    client: httpx.AsyncClient,
    provider: ProviderProfile,
    model: str,
    text: str,
) -> Optional[List[int]]:
    """Ask the provider to tokenize ``text``.

    Args:
        client: Shared HTTP client.
        provider: Snapshot of the provider profile in use for the request.
        model: Model whose tokenizer should be used.
        text: Text to tokenize.

    Returns:
        The token ids, or None if the provider could not tokenize.
    """
    url = "{}/tokenize".format(provider.api_root)
    body = apply_preset(provider, {"model": model, "prompt": text})
    headers = {"Authorization": "Bearer {}".format(provider.api_key)}

    try:
        resp = await client.post(url, json=body, headers=headers)
        resp.raise_for_status()
        data = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.debug("Tokenizer unavailable for provider %s: %s", provider.id, exc)
        return None

    tokens = data.get("tokens") if isinstance(data, dict) else None
    if not isinstance(tokens, list) or not all(
        isinstance(t, int) and not isinstance(t, bool) for t in tokens
    ):
        logger.debug("Tokenizer for provider %s returned no token list", provider.id)
        return None
    return tokens


async def count_tokens(
    client: httpx.AsyncClient,
    provider: ProviderProfile,
    model: str,
    text: str,
) -> Optional[int]:
    """Number of tokens in ``text``, or None on any tokenizer failure."""
    tokens = await tokenize(client, provider, model, text)
    return len(tokens) if tokens is not None else None

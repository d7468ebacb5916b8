"""Usage extraction for provider responses.

Reads provider-reported token usage out of complete response bodies and
streamed chunks, and collects the generated text so that token counts can be
recovered through the provider's tokenizer when usage is missing.

The completions and chat-completions routes share one tracker; each Route
knows where its generated text lives inside a choice.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Route(str, Enum):
    """An OpenAI-compatible completion endpoint proxied by the gateway."""

    COMPLETIONS = "completions"
    CHAT_COMPLETIONS = "chat/completions"

    @property
    def path(self) -> str:
        return self.value

    @property
    def is_chat(self) -> bool:
        return self is Route.CHAT_COMPLETIONS

    @property
    def default_model(self) -> str:
        if self is Route.CHAT_COMPLETIONS:
            return "gpt-3.5-turbo"
        return "gpt-3.5-turbo-instruct"

    def generated_text(self, choice: Any, streamed: bool) -> Optional[str]:
        """Return the text a single choice contributes, if any.

        Completions put it in ``text``. Chat puts it in ``delta.content`` when
        streamed and ``message.content`` otherwise.
        """
        if not isinstance(choice, dict):
            return None
        if self is Route.COMPLETIONS:
            text = choice.get("text")
        else:
            container = choice.get("delta" if streamed else "message")
            text = container.get("content") if isinstance(container, dict) else None
        return text if isinstance(text, str) else None


class PromptKind(str, Enum):
    TEXT = "text"
    STRINGS = "strings"
    TOKENS = "tokens"


def _is_token_id(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


@dataclass
class CompletionPromptView:
    """Classification of a completions ``prompt`` field."""

    kind: PromptKind
    text: str = ""
    strings: List[str] = field(default_factory=list)
    tokens: List[int] = field(default_factory=list)

    @classmethod
    def classify(cls, prompt: Any) -> "CompletionPromptView":
        """Classify a raw prompt value.

        An array whose first element is a token id is treated as pre-tokenized;
        any other array is a list of strings. Anything else that is not a
        string becomes the empty prompt.
        """
        if isinstance(prompt, str):
            return cls(kind=PromptKind.TEXT, text=prompt)
        if isinstance(prompt, list):
            if prompt and _is_token_id(prompt[0]):
                return cls(
                    kind=PromptKind.TOKENS,
                    tokens=[t for t in prompt if _is_token_id(t)],
                )
            return cls(
                kind=PromptKind.STRINGS,
                strings=[s for s in prompt if isinstance(s, str)],
            )
        return cls(kind=PromptKind.TEXT, text="")

    def prompt_text(self) -> str:
        """Text to send to the tokenizer when counting prompt tokens."""
        if self.kind == PromptKind.STRINGS:
            return "\n".join(self.strings)
        return self.text

    def token_count(self) -> Optional[int]:
        """Prompt length when pre-tokenized, else None."""
        if self.kind == PromptKind.TOKENS:
            return len(self.tokens)
        return None


def chat_prompt_text(messages: Any) -> str:
    """Join the string ``content`` of each chat message with newlines."""
    if not isinstance(messages, list):
        return ""
    parts = []
    for message in messages:
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            parts.append(message["content"])
    return "\n".join(parts)


def _read_count(usage: Dict[str, Any], key: str) -> Optional[int]:
    value = usage.get(key)
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return None


@dataclass
class UsageTracker:
    """Accumulates usage and generated text across response fragments.

    Provider-reported usage always wins: a fragment carrying ``usage`` updates
    the counts it contains (later fragments overwrite earlier ones). Fragments
    without usage contribute their choices' generated text instead.
    """

    route: Route
    streamed: bool = False
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    text: str = ""

    def feed(self, fragment: Any) -> None:
        if not isinstance(fragment, dict):
            return

        usage = fragment.get("usage")
        if isinstance(usage, dict):
            prompt_tokens = _read_count(usage, "prompt_tokens")
            if prompt_tokens is not None:
                self.prompt_tokens = prompt_tokens
            completion_tokens = _read_count(usage, "completion_tokens")
            if completion_tokens is not None:
                self.completion_tokens = completion_tokens
            return

        choices = fragment.get("choices")
        if isinstance(choices, list):
            for choice in choices:
                text = self.route.generated_text(choice, self.streamed)
                if text:
                    self.text += text


def decode_frame(frame: str) -> Optional[Dict[str, Any]]:
    """Parse one ``field: {json}`` event frame.

    Returns the JSON object after the first colon, or None when the frame has
    no colon or its payload is not a JSON object (``data: [DONE]`` included).
    """
    _, sep, payload = frame.partition(":")
    if not sep:
        return None
    try:
        decoded = json.loads(payload)
    except ValueError:
        return None
    return decoded if isinstance(decoded, dict) else None


class FrameDecoder:
    """Splits raw stream chunks into event frames and decodes them.

    A frame may be split across network chunks, so the trailing partial line
    of each chunk is held back until its newline arrives.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> List[Dict[str, Any]]:
        data = self._pending + chunk
        lines = data.split("\n")
        self._pending = lines.pop()
        return self._decode(lines)

    def flush(self) -> List[Dict[str, Any]]:
        pending, self._pending = self._pending, ""
        return self._decode([pending])

    @staticmethod
    def _decode(lines: List[str]) -> List[Dict[str, Any]]:
        frames = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            decoded = decode_frame(line)
            if decoded is not None:
                frames.append(decoded)
        return frames


def tokens_per_second(
    completion_tokens: Optional[int], elapsed_seconds: float
) -> Optional[int]:
    """Integer-truncated generation speed, or None when it cannot be derived."""
    if completion_tokens is None or elapsed_seconds <= 0:
        return None
    return int(completion_tokens / elapsed_seconds)

from __future__ import annotations

import json
import re
from typing import Any, Sequence

from llm_relay.errors import ParseError
from llm_relay.llm_providers import ProviderDescriptor
from llm_relay.models import ChatTurn, NormalizedResult, ProviderRequest, RawResponse


MESSAGE_OVERHEAD_TOKENS = 4
DEFAULT_ANTHROPIC_MAX_TOKENS = 1024
DEFAULT_GENERIC_BODY = {"model": "{{model}}", "messages": "{{messages}}"}
FILTER_ERROR_CODES = frozenset(
    {
        "content_filter",
        "content_policy_violation",
        "responsibleaipolicyviolation",
        "safety",
    }
)

_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>", re.I)
_THINKING_BLOCK = re.compile(r"<thinking>[\s\S]*?</thinking>", re.I)
_THINK_HEADER = re.compile(
    r"\*\*(?:Thinking|Reasoning|Analysis):\*\*[\s\S]*?(?=\*\*(?:Response|Answer|Output):\*\*|$)",
    re.I,
)
_ANSWER_HEADER = re.compile(r"\*\*(?:Response|Answer|Output):\*\*", re.I)
_DOTS_LINE = re.compile(r"^\s*\.{3,}\s*$", re.M)
_BLANK_RUN = re.compile(r"\n{3,}")


def estimate_tokens(text: str) -> int:
    return (len(text) + 3) // 4 + MESSAGE_OVERHEAD_TOKENS


def _strip_block(text: str, pattern: re.Pattern[str]) -> str:
    # A reply wrapped entirely in reasoning tags keeps only what follows them.
    match = re.match(r"[\s\S]*?" + pattern.pattern + r"([\s\S]*)", text, re.I)
    if match and match.group(1).strip():
        text = match.group(1)
    return pattern.sub("", text)


def clean_llm_response(text: str | None) -> str:
    if not text:
        return ""
    cleaned = _strip_block(text, _THINK_BLOCK)
    cleaned = _strip_block(cleaned, _THINKING_BLOCK)
    cleaned = _THINK_HEADER.sub("", cleaned)
    cleaned = _ANSWER_HEADER.sub("", cleaned)
    cleaned = _DOTS_LINE.sub("", cleaned)
    cleaned = _BLANK_RUN.sub("\n\n", cleaned)
    return cleaned.strip()


def extract_path(data: Any, path: str | None) -> Any:
    if path is None:
        return None
    current: Any = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
    return current


def render_template(value: Any, context: dict[str, Any]) -> Any:
    if isinstance(value, str):
        if value.startswith("{{") and value.endswith("}}"):
            key = value[2:-2].strip()
            if key in context:
                return context[key]
        result = value
        for key, ctx_value in context.items():
            if isinstance(ctx_value, (str, int, float)):
                result = result.replace(f"{{{{{key}}}}}", str(ctx_value))
        return result
    if isinstance(value, list):
        return [render_template(item, context) for item in value]
    if isinstance(value, dict):
        return {k: render_template(v, context) for k, v in value.items()}
    return value


def _token_count(value: Any) -> int:
    # Bad usage counts are reported as zero.
    if isinstance(value, bool):
        return 0
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


def _is_filter_error(error: Any) -> bool:
    if isinstance(error, str):
        return any(code in error.lower() for code in FILTER_ERROR_CODES)
    if not isinstance(error, dict):
        return False
    for key in ("code", "type"):
        code = error.get(key)
        if isinstance(code, str) and code.lower() in FILTER_ERROR_CODES:
            return True
    inner = error.get("innererror")
    if isinstance(inner, dict):
        return _is_filter_error(inner)
    return False


class RequestNormalizer:
    """Converts chat turns into provider payloads and provider bodies back into results.

    Both directions dispatch on ``ProviderDescriptor.kind``. ``build_request``
    reads no clock and no global state, so equal inputs give equal bytes.
    """

    def build_request(
        self,
        descriptor: ProviderDescriptor,
        history: Sequence[ChatTurn],
        new_user_turn: ChatTurn,
        system_prompt: str | None,
        model: str | None = None,
    ) -> ProviderRequest:
        model = model or descriptor.default_model
        context_turns = self._fit_history(descriptor, history, new_user_turn, system_prompt)
        if descriptor.kind == "openai_chat":
            payload = self._openai_payload(descriptor, context_turns, new_user_turn, system_prompt, model)
        elif descriptor.kind == "anthropic_messages":
            payload = self._anthropic_payload(descriptor, context_turns, new_user_turn, system_prompt, model)
        elif descriptor.kind == "generic":
            payload = self._generic_payload(descriptor, context_turns, new_user_turn, system_prompt, model)
        else:
            raise ValueError(f"Unsupported provider kind '{descriptor.kind}'")
        body = json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return ProviderRequest(
            provider_id=descriptor.provider_id,
            kind=descriptor.kind,
            model=model,
            payload=payload,
            body=body,
        )

    def _fit_history(
        self,
        descriptor: ProviderDescriptor,
        history: Sequence[ChatTurn],
        new_user_turn: ChatTurn,
        system_prompt: str | None,
    ) -> list[ChatTurn]:
        budget = descriptor.context_budget - estimate_tokens(new_user_turn.content)
        if system_prompt:
            budget -= estimate_tokens(system_prompt)
        candidates = [turn for turn in history if turn.role != "system"]
        if descriptor.max_history_messages is not None:
            limit = max(descriptor.max_history_messages, 0)
            candidates = candidates[len(candidates) - limit :] if limit else []
        selected: list[ChatTurn] = []
        for turn in reversed(candidates):
            cost = estimate_tokens(turn.content)
            if cost > budget:
                break
            budget -= cost
            selected.append(turn)
        selected.reverse()
        return selected

    def _user_content(self, descriptor: ProviderDescriptor, turn: ChatTurn) -> Any:
        if not turn.media or not descriptor.supports("vision"):
            return turn.content
        if descriptor.kind == "anthropic_messages":
            return [
                {"type": "text", "text": turn.content},
                {"type": "image", "source": {"type": "url", "url": turn.media}},
            ]
        return [
            {"type": "text", "text": turn.content},
            {"type": "image_url", "image_url": {"url": turn.media}},
        ]

    def _chat_messages(
        self,
        descriptor: ProviderDescriptor,
        turns: Sequence[ChatTurn],
        new_user_turn: ChatTurn,
    ) -> list[dict[str, Any]]:
        messages = [{"role": turn.role, "content": turn.content} for turn in turns]
        messages.append({"role": "user", "content": self._user_content(descriptor, new_user_turn)})
        return messages

    def _openai_payload(
        self,
        descriptor: ProviderDescriptor,
        turns: Sequence[ChatTurn],
        new_user_turn: ChatTurn,
        system_prompt: str | None,
        model: str | None,
    ) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(self._chat_messages(descriptor, turns, new_user_turn))
        payload: dict[str, Any] = dict(descriptor.options)
        payload["messages"] = messages
        if model:
            payload["model"] = model
        if descriptor.max_output_tokens:
            payload["max_tokens"] = descriptor.max_output_tokens
        return payload

    def _anthropic_payload(
        self,
        descriptor: ProviderDescriptor,
        turns: Sequence[ChatTurn],
        new_user_turn: ChatTurn,
        system_prompt: str | None,
        model: str | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = dict(descriptor.options)
        payload["messages"] = self._chat_messages(descriptor, turns, new_user_turn)
        payload["max_tokens"] = descriptor.max_output_tokens or DEFAULT_ANTHROPIC_MAX_TOKENS
        if system_prompt:
            payload["system"] = system_prompt
        if model:
            payload["model"] = model
        return payload

    def _generic_payload(
        self,
        descriptor: ProviderDescriptor,
        turns: Sequence[ChatTurn],
        new_user_turn: ChatTurn,
        system_prompt: str | None,
        model: str | None,
    ) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(self._chat_messages(descriptor, turns, new_user_turn))
        context = {
            "content": new_user_turn.content,
            "model": model,
            "messages": messages,
            "system_prompt": system_prompt or "",
            "media": new_user_turn.media or "",
        }
        payload = render_template(descriptor.body_template or DEFAULT_GENERIC_BODY, context)
        if not isinstance(payload, dict):
            raise ValueError(f"Provider '{descriptor.provider_id}' body template must render to an object")
        for key, value in descriptor.options.items():
            payload.setdefault(key, value)
        return payload

    def parse_response(self, descriptor: ProviderDescriptor, raw: RawResponse) -> NormalizedResult:
        if descriptor.kind == "generic" and descriptor.response.get("stream"):
            return self._parse_generic_stream(descriptor, raw)
        data = self._decode_json(raw)
        if descriptor.kind == "openai_chat":
            return self._parse_openai(descriptor, raw, data)
        if descriptor.kind == "anthropic_messages":
            return self._parse_anthropic(descriptor, raw, data)
        if descriptor.kind == "generic":
            return self._parse_generic(descriptor, raw, data)
        raise ParseError("malformed", f"Unsupported provider kind '{descriptor.kind}'")

    def _decode_json(self, raw: RawResponse) -> Any:
        if not raw.content or not raw.content.strip():
            if raw.status_code >= 400:
                raise ParseError("malformed", f"HTTP {raw.status_code} with empty body")
            raise ParseError("empty", "response body is empty")
        try:
            return json.loads(raw.content)
        except (ValueError, UnicodeDecodeError) as exc:
            raise ParseError("malformed", f"response is not JSON: {exc}") from exc

    def _parse_openai(self, descriptor: ProviderDescriptor, raw: RawResponse, data: Any) -> NormalizedResult:
        if not isinstance(data, dict):
            raise ParseError("malformed", "response is not an object")
        error = data.get("error")
        if raw.status_code >= 400 or error:
            if _is_filter_error(error):
                raise ParseError("filtered", "request blocked by content filter")
            raise ParseError("malformed", f"HTTP {raw.status_code} error response")
        choices = data.get("choices")
        if not isinstance(choices, list):
            raise ParseError("malformed", "choices missing")
        if not choices:
            raise ParseError("empty", "no choices returned")
        choice = choices[0]
        message = choice.get("message") if isinstance(choice, dict) else None
        if not isinstance(message, dict):
            raise ParseError("malformed", "choice has no message")
        finish_reason = choice.get("finish_reason")
        if finish_reason == "content_filter" or message.get("refusal"):
            raise ParseError("filtered", "completion blocked by content filter")
        content = message.get("content")
        if content is not None and not isinstance(content, str):
            raise ParseError("malformed", "message content is not text")
        tool_calls: tuple[dict[str, Any], ...] = ()
        if descriptor.supports("tools") and isinstance(message.get("tool_calls"), list):
            tool_calls = tuple(call for call in message["tool_calls"] if isinstance(call, dict))
        text = clean_llm_response(content)
        if not text and not tool_calls:
            raise ParseError("empty", "completion has no content")
        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        prompt_tokens = _token_count(usage.get("prompt_tokens"))
        completion_tokens = _token_count(usage.get("completion_tokens"))
        return NormalizedResult(
            provider_id=descriptor.provider_id,
            text=text,
            model=data.get("model"),
            finish_reason=finish_reason,
            tool_calls=tool_calls,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=_token_count(usage.get("total_tokens")) or prompt_tokens + completion_tokens,
        )

    def _parse_anthropic(self, descriptor: ProviderDescriptor, raw: RawResponse, data: Any) -> NormalizedResult:
        if not isinstance(data, dict):
            raise ParseError("malformed", "response is not an object")
        if raw.status_code >= 400 or data.get("type") == "error":
            if _is_filter_error(data.get("error")):
                raise ParseError("filtered", "request blocked by content filter")
            raise ParseError("malformed", f"HTTP {raw.status_code} error response")
        stop_reason = data.get("stop_reason")
        if stop_reason == "refusal":
            raise ParseError("filtered", "model refused the request")
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ParseError("malformed", "content blocks missing")
        texts = [
            block["text"]
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        ]
        tool_calls: tuple[dict[str, Any], ...] = ()
        if descriptor.supports("tools"):
            tool_calls = tuple(b for b in blocks if isinstance(b, dict) and b.get("type") == "tool_use")
        text = clean_llm_response("".join(texts))
        if not text and not tool_calls:
            raise ParseError("empty", "completion has no text blocks")
        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        prompt_tokens = _token_count(usage.get("input_tokens"))
        completion_tokens = _token_count(usage.get("output_tokens"))
        return NormalizedResult(
            provider_id=descriptor.provider_id,
            text=text,
            model=data.get("model"),
            finish_reason=stop_reason,
            tool_calls=tool_calls,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    def _check_generic_filter(self, descriptor: ProviderDescriptor, data: Any) -> None:
        filtered_path = descriptor.response.get("filtered_path")
        if not filtered_path:
            return
        filtered_values = descriptor.response.get("filtered_values", [True])
        if extract_path(data, filtered_path) in filtered_values:
            raise ParseError("filtered", "provider flagged the content")

    def _parse_generic(self, descriptor: ProviderDescriptor, raw: RawResponse, data: Any) -> NormalizedResult:
        self._check_generic_filter(descriptor, data)
        if raw.status_code >= 400:
            raise ParseError("malformed", f"HTTP {raw.status_code} error response")
        content_path = descriptor.response.get("content_path")
        value = extract_path(data, content_path) if content_path else data
        if value is None:
            raise ParseError("malformed", f"content path {content_path!r} not found")
        if isinstance(value, (dict, list)):
            raise ParseError("malformed", "content is not text")
        text = clean_llm_response(str(value))
        if not text:
            raise ParseError("empty", "content is empty")
        total_tokens_path = descriptor.response.get("total_tokens_path")
        total_tokens = extract_path(data, total_tokens_path) if total_tokens_path else None
        return NormalizedResult(
            provider_id=descriptor.provider_id,
            text=text,
            model=extract_path(data, descriptor.response.get("model_path")),
            total_tokens=_token_count(total_tokens),
        )

    def _parse_generic_stream(self, descriptor: ProviderDescriptor, raw: RawResponse) -> NormalizedResult:
        if raw.status_code >= 400:
            raise ParseError("malformed", f"HTTP {raw.status_code} error response")
        response_cfg = descriptor.response
        content_path = response_cfg.get("stream_content_path")
        done_path = response_cfg.get("stream_done_path")
        line_prefix = response_cfg.get("stream_line_prefix")
        done_value = response_cfg.get("stream_done_value")
        try:
            body = raw.content.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError("malformed", "stream is not UTF-8") from exc
        parts: list[str] = []
        recognized = False
        for line in body.splitlines():
            line = line.strip()
            if not line:
                continue
            if line_prefix and line.startswith(line_prefix):
                line = line[len(line_prefix):].strip()
            if done_value is not None and line == done_value:
                recognized = True
                break
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            recognized = True
            self._check_generic_filter(descriptor, data)
            chunk = extract_path(data, content_path) if content_path else None
            if chunk:
                parts.append(str(chunk))
            if done_path and extract_path(data, done_path):
                break
        if not recognized and body.strip():
            raise ParseError("malformed", "stream has no JSON lines")
        text = clean_llm_response("".join(parts))
        if not text:
            raise ParseError("empty", "stream response empty")
        return NormalizedResult(provider_id=descriptor.provider_id, text=text)

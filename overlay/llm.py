from openai import AsyncOpenAI
import openai
import httpx
import base64
import errno
import logging
import socket
from contextlib import suppress
from typing import AsyncIterator, Iterable

from overlay.errors import (
    GatewayError,
    HostUnreachableError,
    NetworkError,
    NoConnectionError,
    RemoteAPIError,
    RequestTimeoutError,
)
from overlay.models import ROLE_ASSISTANT, ChatMessage, GenerationParams, StreamDelta

logger = logging.getLogger(__name__)

_NO_NETWORK_ERRNOS = {errno.ENETUNREACH, errno.ENETDOWN}


def _exception_chain(error: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    seen: set[int] = set()
    cur: BaseException | None = error
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        chain.append(cur)
        cur = cur.__cause__ or cur.__context__
    return chain


def _status_error_details(error: "openai.APIStatusError") -> tuple[object, str]:
    code: object = getattr(error, "status_code", None) or "?"
    message = str(getattr(error, "message", "") or error)
    body = getattr(error, "body", None)
    if isinstance(body, list) and body:
        body = body[0]
    if isinstance(body, dict):
        detail = body.get("error") if isinstance(body.get("error"), dict) else body
        body_code = detail.get("code")
        if isinstance(body_code, int):
            code = body_code
        body_message = detail.get("message")
        if isinstance(body_message, str) and body_message.strip():
            message = body_message.strip()
    return code, message


def classify_error(error: BaseException) -> BaseException:
    """Map an openai/httpx/socket failure onto the gateway error taxonomy.

    Unknown errors are returned unchanged.
    """
    if isinstance(error, GatewayError):
        return error
    if isinstance(error, openai.APIStatusError):
        code, message = _status_error_details(error)
        return RemoteAPIError(code, message)
    if not isinstance(error, (openai.APIConnectionError, httpx.TransportError, OSError)):
        return error

    no_network = False
    timed_out = False
    unreachable = False
    for link in _exception_chain(error):
        if isinstance(link, (openai.APITimeoutError, httpx.TimeoutException, TimeoutError)):
            timed_out = True
        elif isinstance(link, socket.gaierror):
            unreachable = True
        elif isinstance(link, OSError) and link.errno in _NO_NETWORK_ERRNOS:
            no_network = True
        elif isinstance(link, (ConnectionRefusedError, httpx.ConnectError)):
            unreachable = True

    detail = " ".join(str(error).split()) or type(error).__name__
    if no_network:
        return NoConnectionError(detail)
    if timed_out:
        return RequestTimeoutError(detail)
    if unreachable:
        return HostUnreachableError(detail)
    return NetworkError(detail)


def _raise_classified(error: BaseException):
    classified = classify_error(error)
    if classified is error:
        raise error
    raise classified from error


def _guess_image_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    return "image/jpeg"


def _delta_from_chunk(chunk) -> StreamDelta | None:
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return None
    delta = getattr(choices[0], "delta", None)
    if delta is None:
        return None
    text = getattr(delta, "content", None)
    # OpenAI-compatible providers expose the reasoning trace under either name.
    thought = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
    text = text if isinstance(text, str) and text else None
    thought = thought if isinstance(thought, str) and thought else None
    if text is None and thought is None:
        return None
    return StreamDelta(text_part=text, thought_part=thought)


class ModelGateway:
    def __init__(
        self,
        api_key,
        base_url="https://generativelanguage.googleapis.com/v1beta/openai",
        model="gemini-2.5-pro",
        default_headers=None,
        *,
        fallback_routes=None,
        failover_enabled: bool = True,
    ):
        self.failover_enabled = bool(failover_enabled)
        self.endpoints = []

        self._add_endpoint(
            {
                "provider": "primary",
                "api_key": api_key,
                "base_url": base_url,
                "model": model,
                "api_extra_headers": default_headers,
            }
        )
        for route in (fallback_routes or []):
            self._add_endpoint(route)

        if not self.endpoints:
            raise ValueError("ModelGateway requires at least one endpoint with an API key.")

    def _add_endpoint(self, route: dict) -> None:
        if not isinstance(route, dict):
            return
        api_key = str(route.get("api_key") or "").strip()
        if not api_key:
            return

        base_url = str(route.get("base_url") or "").strip()
        model = str(route.get("model") or "").strip()
        if not base_url or not model:
            return

        headers = route.get("api_extra_headers", route.get("default_headers"))
        if not isinstance(headers, dict):
            headers = {}
        provider = str(route.get("provider") or "custom").strip().lower() or "custom"

        ep = {
            "provider": provider,
            "api_key": api_key,
            "base_url": base_url,
            "model": model,
            "api_extra_headers": headers,
            "client": AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                default_headers=headers,
            ),
        }

        # Keep first occurrence by unique connection tuple.
        for cur in self.endpoints:
            if (
                cur.get("base_url") == ep["base_url"]
                and cur.get("model") == ep["model"]
                and cur.get("api_key") == ep["api_key"]
                and cur.get("api_extra_headers") == ep["api_extra_headers"]
            ):
                return

        self.endpoints.append(ep)

    async def chat_create(self, *, model: str | None = None, **kwargs):
        """Create a completion, walking the fallback endpoints in order.

        ``model`` overrides the primary endpoint's model only; fallbacks keep
        their own model ids since they usually belong to other providers.
        """
        if not self.endpoints:
            raise RuntimeError("No model endpoints configured")

        errors: list[BaseException] = []
        attempt_count = len(self.endpoints) if self.failover_enabled else 1
        for idx in range(attempt_count):
            ep = self.endpoints[idx]
            req = dict(kwargs)
            req["model"] = model if (model and idx == 0) else ep["model"]
            try:
                resp = await ep["client"].chat.completions.create(**req)
                if idx > 0:
                    logger.warning(
                        "Model failover selected endpoint #%s (%s %s)",
                        idx + 1,
                        ep["provider"],
                        ep["base_url"],
                    )
                return resp
            except Exception as e:
                errors.append(e)
                if idx + 1 < attempt_count:
                    logger.warning(
                        "Model endpoint failed, trying fallback #%s: %s (%s) -> %s",
                        idx + 2,
                        ep["provider"],
                        ep["base_url"],
                        e,
                    )
                continue

        if len(errors) > 1:
            logger.error(
                "All configured model endpoints failed: %s",
                " | ".join(f"#{i + 1}: {e}" for i, e in enumerate(errors)),
            )
        _raise_classified(errors[-1])

    @staticmethod
    def _to_api_messages(history: Iterable[ChatMessage], system_prompt: str | None = None) -> list[dict]:
        messages: list[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for m in history:
            role = "assistant" if m.role == ROLE_ASSISTANT else "user"
            text = m.text or ""
            if m.image_data and role == "user":
                encoded = base64.b64encode(m.image_data).decode("ascii")
                content = [
                    {"type": "text", "text": text},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{_guess_image_mime(m.image_data)};base64,{encoded}"},
                    },
                ]
                messages.append({"role": role, "content": content})
                continue
            if not text.strip():
                continue
            messages.append({"role": role, "content": text})
        return messages

    @staticmethod
    def _request_options(params: GenerationParams) -> dict:
        options: dict = {}
        if params.temperature is not None:
            options["temperature"] = params.temperature
        if params.top_p is not None:
            options["top_p"] = params.top_p
        if params.max_output_tokens is not None:
            options["max_tokens"] = params.max_output_tokens
        if params.thinking_enabled and params.thinking_level:
            options["reasoning_effort"] = params.thinking_level

        extra_body: dict = {}
        if params.top_k is not None:
            extra_body["top_k"] = params.top_k
        google: dict = {}
        if params.thinking_enabled:
            google["thinking_config"] = {"include_thoughts": True}
        if params.safety_thresholds:
            google["safety_settings"] = [
                {"category": category, "threshold": threshold}
                for category, threshold in params.safety_thresholds.items()
            ]
        if params.tools:
            google["tools"] = [{tool: {}} for tool in params.tools]
        if google:
            extra_body["google"] = google
        extra_body.update(params.extra or {})
        if extra_body:
            options["extra_body"] = extra_body
        return options

    async def stream(
        self,
        history: Iterable[ChatMessage],
        params: GenerationParams,
        *,
        system_prompt: str | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """
        Streams a reply for the given history.
        Yields StreamDelta values in arrival order; failures are raised classified.
        """
        messages = self._to_api_messages(history, system_prompt)
        options = self._request_options(params)
        response = await self.chat_create(model=params.model or None, messages=messages, stream=True, **options)
        try:
            async for chunk in response:
                delta = _delta_from_chunk(chunk)
                if delta is not None:
                    yield delta
        except GatewayError:
            raise
        except Exception as e:
            _raise_classified(e)
        finally:
            close = getattr(response, "close", None)
            if close is not None:
                with suppress(Exception):
                    await close()

    async def complete(self, prompt: str, params: GenerationParams) -> str:
        """Drain a single-prompt stream into its full text."""
        parts: list[str] = []
        async for delta in self.stream([ChatMessage.user(prompt)], params):
            if delta.text_part:
                parts.append(delta.text_part)
        return "".join(parts)

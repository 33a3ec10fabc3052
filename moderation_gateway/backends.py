# moderation_gateway/backends.py
"""Inference backends that return a moderation model's raw verdict text.

Every backend implements ``analyze(message, system_prompt) -> str``. The wire
protocol differs per provider; callers only ever see the raw text or one of
the ``BackendError`` subclasses below.
"""
import abc
import asyncio
import logging
import os
from typing import Any, Dict, Optional

import httpx
import replicate
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI
from replicate.exceptions import ReplicateException

logger = logging.getLogger(__name__)

BODY_SNIPPET_CHARS = 500


# --- Errors ---

class BackendError(Exception):
    """Base class for failures while calling an inference backend."""


class BackendConfigError(BackendError):
    """The backend cannot be constructed (unknown kind, missing credential)."""


class BackendRequestError(BackendError):
    """The outgoing request could not be built."""


class BackendTransportError(BackendError):
    """The backend could not be reached."""


class BackendTimeoutError(BackendTransportError):
    """The backend did not answer before the deadline."""


class BackendStatusError(BackendError):
    """The backend answered with a non-success status."""

    def __init__(self, status_code: Optional[int], body: str = ""):
        self.status_code = status_code
        self.body = body[:BODY_SNIPPET_CHARS]
        super().__init__(f"unexpected status code {status_code}: {self.body}")


class BackendDecodeError(BackendError):
    """The backend's answer could not be decoded into verdict text."""


class UnexpectedOutputError(BackendError):
    """The backend produced output of the wrong type."""

    def __init__(self, output: Any):
        self.output_type = type(output).__name__
        super().__init__(f"expected string output, got {self.output_type}")


# --- Contract ---

class ModerationBackend(abc.ABC):
    """An inference provider able to judge one message."""

    kind = ""
    DEFAULT_MODEL = ""
    DEFAULT_BASE_URL = ""

    def __init__(self, model: str, base_url: str = "", timeout: Optional[float] = None):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def analyze(self, message: str, system_prompt: str) -> str:
        """Returns the backend's raw answer for ``message``.

        Honors ``self.timeout`` as a deadline for the whole call; task
        cancellation propagates into the underlying request.
        """
        try:
            async with asyncio.timeout(self.timeout):
                return await self._analyze(message, system_prompt)
        except TimeoutError as e:
            raise BackendTimeoutError(f"{self.kind} backend timed out after {self.timeout}s") from e

    @abc.abstractmethod
    async def _analyze(self, message: str, system_prompt: str) -> str:
        ...

    @classmethod
    def create(cls, model: str, base_url: str, timeout: Optional[float] = None, http_client=None):
        """Builds the backend from resolved settings. Credentials come from the environment."""
        return cls(model=model, base_url=base_url, timeout=timeout, http_client=http_client)

    async def aclose(self) -> None:
        """Releases network resources held by the backend."""


def chat_messages(message: str, system_prompt: str) -> list:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": message},
    ]


# --- Providers ---

class OllamaBackend(ModerationBackend):
    """Local chat-completion daemon (``POST /api/chat``)."""

    kind = "ollama"
    DEFAULT_BASE_URL = "http://localhost:11434"
    DEFAULT_MODEL = "llama-guard3:1b"
    CHAT_PATH = "/api/chat"

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(model, base_url, timeout)
        self._client = http_client or httpx.AsyncClient(timeout=None)

    async def _analyze(self, message: str, system_prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": chat_messages(message, system_prompt),
            "stream": False,
        }
        try:
            request = self._client.build_request(
                "POST", self.base_url + self.CHAT_PATH, json=payload
            )
        except (TypeError, ValueError, httpx.InvalidURL) as e:
            raise BackendRequestError(f"creating request: {e}") from e

        try:
            resp = await self._client.send(request)
        except httpx.TimeoutException as e:
            raise BackendTimeoutError(f"making request: {e}") from e
        except httpx.HTTPError as e:
            raise BackendTransportError(f"making request: {e}") from e

        if resp.status_code != httpx.codes.OK:
            raise BackendStatusError(resp.status_code, resp.text)

        try:
            data = resp.json()
            content = data["message"]["content"]
        except (ValueError, KeyError, TypeError) as e:
            raise BackendDecodeError(f"decoding response: {e!r}") from e
        if not isinstance(content, str):
            raise BackendDecodeError("decoding response: message content is not a string")
        return content

    async def aclose(self) -> None:
        await self._client.aclose()


class OpenAIBackend(ModerationBackend):
    """OpenAI-compatible endpoint (``POST /v1/chat/completions``)."""

    kind = "openai"
    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    DEFAULT_MODEL = "gpt-4o-mini"

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(model, base_url, timeout)
        if not api_key:
            raise BackendConfigError("OPENAI_API_KEY not set")
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            max_retries=0,
            http_client=http_client,
        )

    @classmethod
    def create(cls, model, base_url, timeout=None, http_client=None):
        return cls(
            api_key=os.environ.get("OPENAI_API_KEY", ""),
            model=model,
            base_url=base_url,
            timeout=timeout,
            http_client=http_client,
        )

    async def _analyze(self, message: str, system_prompt: str) -> str:
        try:
            resp = await self._client.chat.completions.create(
                model=self.model,
                messages=chat_messages(message, system_prompt),
            )
        except APIStatusError as e:
            raise BackendStatusError(e.status_code, e.response.text) from e
        except APITimeoutError as e:
            raise BackendTimeoutError(f"making request: {e}") from e
        except APIConnectionError as e:
            raise BackendTransportError(f"making request: {e}") from e

        try:
            content = resp.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise BackendDecodeError(f"decoding response: {e!r}") from e
        if not isinstance(content, str):
            raise BackendDecodeError("decoding response: no message content in first choice")
        return content

    async def aclose(self) -> None:
        await self._client.close()


class ReplicateBackend(ModerationBackend):
    """Hosted model execution on Replicate."""

    kind = "replicate"
    DEFAULT_BASE_URL = "https://api.replicate.com"
    DEFAULT_MODEL = "meta/llama-guard-3-8b"

    def __init__(
        self,
        api_token: str = "",
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: Optional[float] = None,
        client: Any = None,
    ):
        super().__init__(model, base_url, timeout)
        if client is None:
            if not api_token:
                raise BackendConfigError("REPLICATE_API_TOKEN not set")
            client = replicate.Client(api_token=api_token, base_url=self.base_url)
        self._client = client

    @classmethod
    def create(cls, model, base_url, timeout=None, http_client=None):
        return cls(
            api_token=os.environ.get("REPLICATE_API_TOKEN", ""),
            model=model,
            base_url=base_url,
            timeout=timeout,
        )

    async def _analyze(self, message: str, system_prompt: str) -> str:
        model_input = {"prompt": message, "system_prompt": system_prompt}
        try:
            output = await self._client.async_run(self.model, input=model_input)
        except ReplicateException as e:
            raise BackendStatusError(getattr(e, "status", None), str(e)) from e
        except httpx.TimeoutException as e:
            raise BackendTimeoutError(f"running model: {e}") from e
        except httpx.HTTPError as e:
            raise BackendTransportError(f"running model: {e}") from e

        if not isinstance(output, str):
            raise UnexpectedOutputError(output)
        return output


BACKENDS = {
    OllamaBackend.kind: OllamaBackend,
    OpenAIBackend.kind: OpenAIBackend,
    ReplicateBackend.kind: ReplicateBackend,
}


def build_backend(
    cfg: Dict[str, Any],
    model: str = "",
    endpoint_url: str = "",
    http_client: Optional[httpx.AsyncClient] = None,
) -> ModerationBackend:
    """Constructs the backend selected by ``cfg["backend"]["kind"]``.

    ``model`` and ``endpoint_url`` override the provider section of ``cfg``;
    the provider's defaults fill whatever is still empty. Raises
    ``BackendConfigError`` when the backend cannot be built.
    """
    kind = str(cfg["backend"]["kind"]).lower()
    try:
        backend_cls = BACKENDS[kind]
    except KeyError:
        raise BackendConfigError(
            f"unknown backend {kind!r}; expected one of {', '.join(sorted(BACKENDS))}"
        ) from None

    timeout = cfg["backend"].get("timeout_seconds")
    section = cfg.get(kind, {})
    backend = backend_cls.create(
        model=model or section.get("model") or backend_cls.DEFAULT_MODEL,
        base_url=endpoint_url or section.get("base_url") or backend_cls.DEFAULT_BASE_URL,
        timeout=float(timeout) if timeout else None,
        http_client=http_client,
    )
    logger.info("Using %s backend (model=%s, endpoint=%s)", backend.kind, backend.model, backend.base_url)
    return backend

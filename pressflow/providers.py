"""
Capability providers with ordered fallback
==========================================

Every AI or stock-media backend is wrapped as a ``CapabilityHandler`` that
serves one or more ``Capability`` values (research, generate, images,
search-images, translate). ``FallbackInvoker`` resolves the ordered list of
eligible handlers for a capability and tries them one at a time until one
returns a valid result.

Handler order:
    1. The caller's preferred handler (campaign override), if eligible
    2. The capability's fallback order (``DEFAULT_HANDLER_ORDER``)
    3. Remaining handlers by priority, highest first

A handler that raises, or whose output fails the capability's validator,
falls through to the next one. When every handler fails the result names
each handler with its own error.

Usage:
    from pressflow.providers import Capability, InvokeRequest, build_default_invoker

    invoker = build_default_invoker()
    result = await invoker.invoke(Capability.GENERATE, InvokeRequest(prompt="...", max_tokens=16384))
    if result.success:
        print(result.handler_used, result.text[:80])
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, Iterable, List, Optional, Tuple

import aiohttp
import anthropic

from pressflow.config import Settings, get_settings, now_iso

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("pressflow.providers")
if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MODEL_SONNET = "claude-sonnet-4-20250514"
MODEL_HAIKU = "claude-haiku-4-5-20251001"

OPENAI_API_BASE = "https://api.openai.com/v1"
OPENAI_TEXT_MODEL = "gpt-4o-mini"
OPENAI_IMAGE_MODEL = "dall-e-3"
PEXELS_SEARCH_URL = "https://api.pexels.com/v1/search"
UNSPLASH_SEARCH_URL = "https://api.unsplash.com/search/photos"

HTTP_TIMEOUT = 60
SEARCH_RESULTS_PER_QUERY = 5
MIN_RESEARCH_LENGTH = 50
MAX_DIAGNOSTICS = 500


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Capability(str, Enum):
    RESEARCH = "research"
    GENERATE = "generate"
    IMAGES = "images"
    SEARCH_IMAGES = "search-images"
    TRANSLATE = "translate"


DEFAULT_HANDLER_ORDER: Dict[Capability, List[str]] = {
    Capability.RESEARCH: ["anthropic", "openai"],
    Capability.GENERATE: ["anthropic", "openai"],
    Capability.IMAGES: ["openai"],
    Capability.SEARCH_IMAGES: ["pexels", "unsplash"],
    Capability.TRANSLATE: ["anthropic", "openai"],
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class HandlerError(Exception):
    """Raised by a handler when its backend call fails."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


def format_exhausted_error(capability: str, attempted: List[str], errors: Dict[str, str]) -> str:
    """Human-readable summary naming every attempted handler and its error."""
    if not attempted:
        return f"No available handlers for {capability}"
    detail = "; ".join(f"{h}: {errors.get(h, 'unknown error')}" for h in attempted)
    return f"All handlers failed for {capability}: {detail} [Tried: {' → '.join(attempted)}]"


class ProviderExhaustedError(Exception):
    """Every eligible handler for a capability failed."""

    def __init__(self, capability: str, attempted: List[str], errors: Dict[str, str]):
        self.capability = capability
        self.attempted = list(attempted)
        self.errors = dict(errors)
        super().__init__(format_exhausted_error(capability, attempted, errors))


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class InvokeRequest:
    """Input to a capability invocation."""

    prompt: str = ""
    max_tokens: int = 4096
    system: Optional[str] = None
    preferred_handler: Optional[str] = None
    topic: str = ""
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HandlerResponse:
    """Raw output of one handler call.

    ``text`` carries text capabilities. ``data`` carries an image URL for
    ``images`` and a list of candidate dicts for ``search-images``.
    """

    text: str = ""
    data: Any = None


@dataclass
class InvokeResult:
    success: bool
    capability: str = ""
    text: str = ""
    data: Any = None
    handler_used: Optional[str] = None
    latency_ms: int = 0
    error: Optional[str] = None
    attempted: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AttemptRecord:
    handler: str
    capability: str
    success: bool
    latency_ms: int
    error: Optional[str] = None
    timestamp: str = field(default_factory=now_iso)


# ---------------------------------------------------------------------------
# Handler base
# ---------------------------------------------------------------------------


class CapabilityHandler(ABC):
    """A backend that can serve one or more capabilities."""

    handler_id: str = ""
    capabilities: FrozenSet[Capability] = frozenset()
    priority: int = 0

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def is_available(self) -> bool:
        return True

    @abstractmethod
    async def execute(self, capability: Capability, request: InvokeRequest) -> HandlerResponse:
        """Run *capability*; raise on failure."""

    async def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.handler_id!r}, priority={self.priority})"


def resolve_handlers(
    capability: Capability,
    handlers: Iterable[CapabilityHandler],
    preferred: Optional[str] = None,
    fallback_order: Optional[List[str]] = None,
) -> List[CapabilityHandler]:
    """
    Order the eligible handlers for *capability*.

    Parameters
    ----------
    capability : Capability
        Capability being invoked.
    handlers : iterable of CapabilityHandler
        Registered handlers, in registration order.
    preferred : str, optional
        Handler id to try first when it is eligible.
    fallback_order : list of str, optional
        Handler ids to try next, in order. Defaults to
        ``DEFAULT_HANDLER_ORDER[capability]``.

    Returns
    -------
    list of CapabilityHandler
        Available handlers that support the capability, in try order.
    """
    order = list(fallback_order if fallback_order is not None
                 else DEFAULT_HANDLER_ORDER.get(capability, []))
    eligible = [
        (idx, h) for idx, h in enumerate(handlers)
        if h.supports(capability) and h.is_available()
    ]

    def _key(entry):
        idx, handler = entry
        if preferred and handler.handler_id == preferred:
            return (0, 0, idx)
        if handler.handler_id in order:
            return (1, order.index(handler.handler_id), idx)
        return (2, -handler.priority, idx)

    return [h for _, h in sorted(eligible, key=_key)]


def validate_response(capability: Capability, response: HandlerResponse) -> Optional[str]:
    """Return a problem description when *response* is unusable, else None."""
    if response is None:
        return "Handler returned no response"
    if capability in (Capability.GENERATE, Capability.TRANSLATE):
        if not (response.text or "").strip():
            return "Empty response"
    elif capability == Capability.RESEARCH:
        if len((response.text or "").strip()) <= MIN_RESEARCH_LENGTH:
            return "Research response too short"
    elif capability == Capability.IMAGES:
        url = response.data if isinstance(response.data, str) else response.text
        if not url or not (url.startswith("http") or url.startswith("data:image")):
            return "No valid image URL returned"
    elif capability == Capability.SEARCH_IMAGES:
        items = response.data if isinstance(response.data, list) else []
        if not any(isinstance(i, dict) and i.get("url") for i in items):
            return "No image results returned"
    return None


# ---------------------------------------------------------------------------
# Fallback invoker
# ---------------------------------------------------------------------------


class FallbackInvoker:
    """
    Try handlers for a capability in order until one succeeds.

    Parameters
    ----------
    handlers : list of CapabilityHandler, optional
        Initial handlers. More can be added with ``register``.
    fallback_orders : dict, optional
        Per-capability override of ``DEFAULT_HANDLER_ORDER``.
    max_retries_per_handler : int
        Extra attempts on the same handler before falling through. Default 0.
    retry_delay : float
        Base backoff (seconds) between attempts on the same handler.
    """

    def __init__(
        self,
        handlers: Optional[List[CapabilityHandler]] = None,
        fallback_orders: Optional[Dict[Capability, List[str]]] = None,
        max_retries_per_handler: int = 0,
        retry_delay: float = 1.0,
    ):
        self._handlers: List[CapabilityHandler] = []
        self._fallback_orders = dict(fallback_orders or {})
        self.max_retries_per_handler = max(0, max_retries_per_handler)
        self.retry_delay = retry_delay
        self._diagnostics: Deque[AttemptRecord] = deque(maxlen=MAX_DIAGNOSTICS)
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: CapabilityHandler) -> None:
        if any(h.handler_id == handler.handler_id for h in self._handlers):
            raise ValueError(f"Handler {handler.handler_id!r} is already registered")
        self._handlers.append(handler)
        logger.debug("Registered handler %r", handler)

    @property
    def handlers(self) -> List[CapabilityHandler]:
        return list(self._handlers)

    def resolve(self, capability: Capability, preferred: Optional[str] = None) -> List[CapabilityHandler]:
        capability = Capability(capability)
        return resolve_handlers(
            capability,
            self._handlers,
            preferred=preferred,
            fallback_order=self._fallback_orders.get(capability),
        )

    async def _attempt(
        self, handler: CapabilityHandler, capability: Capability, request: InvokeRequest
    ) -> Tuple[Optional[HandlerResponse], int, str]:
        """Run one handler with its in-handler retries; return (response, latency_ms, error)."""
        message = ""
        latency = 0
        for attempt in range(self.max_retries_per_handler + 1):
            t0 = time.monotonic()
            try:
                response = await handler.execute(capability, request)
                problem = validate_response(capability, response)
                if problem:
                    raise HandlerError(problem)
            except Exception as exc:
                latency = int((time.monotonic() - t0) * 1000)
                message = str(exc) or type(exc).__name__
                self._diagnostics.append(AttemptRecord(
                    handler=handler.handler_id,
                    capability=capability.value,
                    success=False,
                    latency_ms=latency,
                    error=message,
                ))
                if attempt < self.max_retries_per_handler:
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))
                    continue
                logger.warning(
                    "Handler %s failed for %s (%dms): %s",
                    handler.handler_id, capability.value, latency, message,
                )
                break

            latency = int((time.monotonic() - t0) * 1000)
            self._diagnostics.append(AttemptRecord(
                handler=handler.handler_id,
                capability=capability.value,
                success=True,
                latency_ms=latency,
            ))
            return response, latency, ""
        return None, latency, message

    async def invoke(
        self,
        capability: Capability,
        request: Optional[InvokeRequest] = None,
        preferred: Optional[str] = None,
    ) -> InvokeResult:
        """
        Invoke *capability* with fallback. Never raises for handler failures.

        Returns
        -------
        InvokeResult
            ``success`` is True with the first valid handler output, or False
            with ``error`` naming every attempted handler.
        """
        capability = Capability(capability)
        request = request or InvokeRequest()
        preferred = preferred or request.preferred_handler
        ordered = self.resolve(capability, preferred)

        attempted: List[str] = []
        errors: Dict[str, str] = {}
        started = time.monotonic()

        for handler in ordered:
            attempted.append(handler.handler_id)
            response, latency, message = await self._attempt(handler, capability, request)
            if response is None:
                errors[handler.handler_id] = message
                continue
            if len(attempted) > 1:
                logger.info(
                    "%s served by fallback handler %s after %s",
                    capability.value, handler.handler_id, ", ".join(attempted[:-1]),
                )
            return InvokeResult(
                success=True,
                capability=capability.value,
                text=response.text or "",
                data=response.data,
                handler_used=handler.handler_id,
                latency_ms=latency,
                attempted=attempted,
                errors=errors,
            )

        error = format_exhausted_error(capability.value, attempted, errors)
        logger.error(error)
        return InvokeResult(
            success=False,
            capability=capability.value,
            latency_ms=int((time.monotonic() - started) * 1000),
            error=error,
            attempted=attempted,
            errors=errors,
        )

    async def invoke_all(
        self,
        capability: Capability,
        request: Optional[InvokeRequest] = None,
        preferred: Optional[str] = None,
    ) -> List[InvokeResult]:
        """
        Invoke *capability* on every resolved handler concurrently.

        Used where outputs are pooled rather than picked, such as aggregated
        stock-photo search. A failing handler yields a failed result and the
        others are unaffected. Results keep resolution order.
        """
        capability = Capability(capability)
        request = request or InvokeRequest()
        preferred = preferred or request.preferred_handler
        ordered = self.resolve(capability, preferred)
        if not ordered:
            logger.error(format_exhausted_error(capability.value, [], {}))
            return []

        outcomes = await asyncio.gather(
            *(self._attempt(handler, capability, request) for handler in ordered)
        )
        results: List[InvokeResult] = []
        for handler, (response, latency, message) in zip(ordered, outcomes):
            if response is None:
                results.append(InvokeResult(
                    success=False,
                    capability=capability.value,
                    handler_used=handler.handler_id,
                    latency_ms=latency,
                    error=f"{handler.handler_id}: {message}",
                    attempted=[handler.handler_id],
                    errors={handler.handler_id: message},
                ))
            else:
                results.append(InvokeResult(
                    success=True,
                    capability=capability.value,
                    text=response.text or "",
                    data=response.data,
                    handler_used=handler.handler_id,
                    latency_ms=latency,
                    attempted=[handler.handler_id],
                ))
        return results

    async def invoke_or_raise(
        self,
        capability: Capability,
        request: Optional[InvokeRequest] = None,
        preferred: Optional[str] = None,
    ) -> InvokeResult:
        """Like ``invoke`` but raises ProviderExhaustedError on failure."""
        result = await self.invoke(capability, request, preferred)
        if not result.success:
            raise ProviderExhaustedError(result.capability, result.attempted, result.errors)
        return result

    # -- Diagnostics ---------------------------------------------------------

    def get_diagnostics(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [asdict(r) for r in list(self._diagnostics)[-limit:]]

    def clear_diagnostics(self) -> None:
        self._diagnostics.clear()

    def get_provider_stats(self) -> Dict[str, Dict[str, Any]]:
        """Per-handler call count, average latency, error count and success rate."""
        stats: Dict[str, Dict[str, Any]] = {}
        for record in self._diagnostics:
            entry = stats.setdefault(
                record.handler, {"calls": 0, "errors": 0, "total_latency_ms": 0}
            )
            entry["calls"] += 1
            entry["total_latency_ms"] += record.latency_ms
            if not record.success:
                entry["errors"] += 1

        for entry in stats.values():
            calls = entry["calls"]
            entry["avg_latency_ms"] = round(entry.pop("total_latency_ms") / calls, 1)
            entry["success_rate"] = round((calls - entry["errors"]) / calls, 3)
        return stats

    async def close(self) -> None:
        for handler in self._handlers:
            await handler.close()


# ---------------------------------------------------------------------------
# Concrete handlers
# ---------------------------------------------------------------------------


class AnthropicHandler(CapabilityHandler):
    """Text capabilities through the Anthropic Messages API."""

    handler_id = "anthropic"
    capabilities = frozenset({Capability.RESEARCH, Capability.GENERATE, Capability.TRANSLATE})
    priority = 100

    def __init__(
        self,
        api_key: str = "",
        model: str = MODEL_SONNET,
        research_model: str = MODEL_HAIKU,
        client: Optional[Any] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.research_model = research_model
        self._client = client

    def is_available(self) -> bool:
        return bool(self.api_key or self._client is not None)

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
        return self._client

    async def execute(self, capability: Capability, request: InvokeRequest) -> HandlerResponse:
        client = self._get_client()
        model = self.research_model if capability == Capability.RESEARCH else self.model

        system_messages = []
        if request.system:
            system_messages = [
                {
                    "type": "text",
                    "text": request.system,
                    "cache_control": {"type": "ephemeral"},
                }
            ]

        try:
            response = await client.messages.create(
                model=model,
                max_tokens=request.max_tokens,
                system=system_messages if system_messages else anthropic.NOT_GIVEN,
                messages=[{"role": "user", "content": request.prompt}],
            )
        except anthropic.APIStatusError as exc:
            raise HandlerError(f"HTTP {exc.status_code}: {exc.message}", status_code=exc.status_code) from exc
        except anthropic.APIError as exc:
            raise HandlerError(str(exc)) from exc

        text = response.content[0].text if response.content else ""
        if getattr(response, "stop_reason", None) == "max_tokens":
            logger.warning("Anthropic response hit max_tokens=%d for %s", request.max_tokens, capability.value)
        return HandlerResponse(text=text)


class _HttpHandler(CapabilityHandler):
    """Shared aiohttp session handling for REST-backed handlers."""

    def __init__(self, timeout: int = HTTP_TIMEOUT):
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _default_headers(self) -> Dict[str, str]:
        return {"User-Agent": "pressflow/0.1", "Accept": "application/json"}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self._default_headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        session = await self._get_session()
        try:
            async with session.request(method, url, **kwargs) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = await resp.text()
                if resp.status >= 400:
                    message = body
                    if isinstance(body, dict):
                        message = body.get("error", body)
                        if isinstance(message, dict):
                            message = message.get("message", message)
                    raise HandlerError(f"HTTP {resp.status}: {message}", status_code=resp.status)
                return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise HandlerError(f"{type(exc).__name__}: {exc}") from exc


class OpenAIHandler(_HttpHandler):
    """Text generation and image generation through the OpenAI REST API."""

    handler_id = "openai"
    capabilities = frozenset({
        Capability.RESEARCH, Capability.GENERATE, Capability.TRANSLATE, Capability.IMAGES,
    })
    priority = 50

    def __init__(
        self,
        api_key: str = "",
        text_model: str = OPENAI_TEXT_MODEL,
        image_model: str = OPENAI_IMAGE_MODEL,
        timeout: int = HTTP_TIMEOUT,
    ):
        super().__init__(timeout=timeout)
        self.api_key = api_key
        self.text_model = text_model
        self.image_model = image_model

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _default_headers(self) -> Dict[str, str]:
        headers = super()._default_headers()
        headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def execute(self, capability: Capability, request: InvokeRequest) -> HandlerResponse:
        if capability == Capability.IMAGES:
            body = await self._request_json(
                "POST",
                f"{OPENAI_API_BASE}/images/generations",
                json={
                    "model": self.image_model,
                    "prompt": request.prompt,
                    "n": 1,
                    "size": "1792x1024",
                },
            )
            data = (body or {}).get("data") or [{}]
            return HandlerResponse(data=data[0].get("url", ""))

        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})
        body = await self._request_json(
            "POST",
            f"{OPENAI_API_BASE}/chat/completions",
            json={
                "model": self.text_model,
                "max_tokens": min(request.max_tokens, 16384),
                "messages": messages,
            },
        )
        choices = (body or {}).get("choices") or [{}]
        return HandlerResponse(text=choices[0].get("message", {}).get("content", "") or "")


class PexelsHandler(_HttpHandler):
    """Stock photo search on Pexels."""

    handler_id = "pexels"
    capabilities = frozenset({Capability.SEARCH_IMAGES})
    priority = 40

    def __init__(self, api_key: str = "", timeout: int = HTTP_TIMEOUT):
        super().__init__(timeout=timeout)
        self.api_key = api_key

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _default_headers(self) -> Dict[str, str]:
        headers = super()._default_headers()
        headers["Authorization"] = self.api_key
        return headers

    async def execute(self, capability: Capability, request: InvokeRequest) -> HandlerResponse:
        query = request.topic or request.prompt
        body = await self._request_json(
            "GET",
            PEXELS_SEARCH_URL,
            params={"query": query, "per_page": SEARCH_RESULTS_PER_QUERY, "orientation": "landscape"},
        )
        results = []
        for photo in (body or {}).get("photos", []):
            src = photo.get("src", {})
            results.append({
                "url": src.get("large2x") or src.get("original", ""),
                "width": photo.get("width", 0),
                "height": photo.get("height", 0),
                "alt": photo.get("alt", ""),
                "description": "",
                "photographer": photo.get("photographer", ""),
                "source": "pexels",
            })
        return HandlerResponse(data=results)


class UnsplashHandler(_HttpHandler):
    """Stock photo search on Unsplash."""

    handler_id = "unsplash"
    capabilities = frozenset({Capability.SEARCH_IMAGES})
    priority = 30

    def __init__(self, access_key: str = "", timeout: int = HTTP_TIMEOUT):
        super().__init__(timeout=timeout)
        self.access_key = access_key

    def is_available(self) -> bool:
        return bool(self.access_key)

    def _default_headers(self) -> Dict[str, str]:
        headers = super()._default_headers()
        headers["Authorization"] = f"Client-ID {self.access_key}"
        headers["Accept-Version"] = "v1"
        return headers

    async def execute(self, capability: Capability, request: InvokeRequest) -> HandlerResponse:
        query = request.topic or request.prompt
        body = await self._request_json(
            "GET",
            UNSPLASH_SEARCH_URL,
            params={"query": query, "per_page": SEARCH_RESULTS_PER_QUERY, "orientation": "landscape"},
        )
        results = []
        for photo in (body or {}).get("results", []):
            results.append({
                "url": photo.get("urls", {}).get("regular", ""),
                "width": photo.get("width", 0),
                "height": photo.get("height", 0),
                "alt": photo.get("alt_description") or "",
                "description": photo.get("description") or "",
                "photographer": photo.get("user", {}).get("name", ""),
                "source": "unsplash",
            })
        return HandlerResponse(data=results)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_default_invoker(settings: Optional[Settings] = None) -> FallbackInvoker:
    """Register every handler whose credentials are present in *settings*."""
    settings = settings or get_settings()
    invoker = FallbackInvoker([
        AnthropicHandler(api_key=settings.anthropic_api_key),
        OpenAIHandler(api_key=settings.openai_api_key),
        PexelsHandler(api_key=settings.pexels_api_key),
        UnsplashHandler(access_key=settings.unsplash_access_key),
    ])
    available = [h.handler_id for h in invoker.handlers if h.is_available()]
    logger.info("Provider handlers available: %s", ", ".join(available) or "none")
    return invoker

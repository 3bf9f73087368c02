"""Structured OpenAI completion calls shared by every expansion service."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from app.config.ai_settings import AI_MODEL_DEFAULT, AI_PERSIST_USAGE
from app.config.openai_client import get_openai_client
from app.services.ai_message_builder import (
    Message,
    MessageValidationError,
    to_chat_messages,
    validate_messages,
)
from app.services.ai_monitoring_service import (
    PerformanceMonitor,
    get_performance_monitor,
    normalize_usage,
)
from app.services.ai_output_parser import OutputTextParser, parse_json_payload
from app.services.ai_schema_service import JsonSchemaEnforcer, with_json_schema
from app.services.cache_key_service import CacheKeyManager, TTLCache
from app.services.concurrency_service import ConcurrencyManager, get_concurrency_manager
from app.services.expansion_repository import save_usage_record
from app.services.retry_service import TimeoutRetryService, error_status
from app.services.seed_manager import (
    SeedManager,
    cleanup_temperature_parameters,
    create_cache_key_with_seed,
    hash_context,
)

logger = logging.getLogger(__name__)


class AIUnavailableError(RuntimeError):
    """Raised when no OpenAI client is configured."""


@dataclass
class CompletionResult:
    text: str
    data: Any
    model: str
    seed: int
    seed_source: str
    cache_key: str
    cached: bool = False
    usage: Dict[str, int] = field(default_factory=dict)
    duration_ms: float = 0.0
    attempts: int = 0
    extraction_method: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def _response_usage(response: Any) -> Any:
    if isinstance(response, dict):
        return response.get("usage")
    return getattr(response, "usage", None)


def _response_model(response: Any, fallback: str) -> str:
    model = response.get("model") if isinstance(response, dict) else getattr(response, "model", None)
    return model if isinstance(model, str) and model else fallback


class CompletionService:
    """Validate, seed, cache, throttle, retry and parse a single model call."""

    def __init__(
        self,
        client: Any = None,
        *,
        client_factory: Callable[[], Any] = get_openai_client,
        concurrency: Optional[ConcurrencyManager] = None,
        retry: Optional[TimeoutRetryService] = None,
        seeds: Optional[SeedManager] = None,
        keys: Optional[CacheKeyManager] = None,
        cache: Optional[TTLCache] = None,
        parser: Optional[OutputTextParser] = None,
        schema_enforcer: Optional[JsonSchemaEnforcer] = None,
        monitor: Optional[PerformanceMonitor] = None,
        usage_sink: Optional[Callable[[Dict[str, Any]], Any]] = save_usage_record if AI_PERSIST_USAGE else None,
    ) -> None:
        self._client = client
        self._client_factory = client_factory
        self.concurrency = concurrency or get_concurrency_manager()
        self.retry = retry or TimeoutRetryService()
        self.seeds = seeds or SeedManager()
        self.keys = keys or CacheKeyManager()
        self.cache = cache or TTLCache()
        self.parser = parser or OutputTextParser()
        self.schema_enforcer = schema_enforcer or JsonSchemaEnforcer()
        self.monitor = monitor or get_performance_monitor()
        self.usage_sink = usage_sink

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    @property
    def available(self) -> bool:
        return self.client is not None

    async def complete(
        self,
        operation: str,
        messages: List[Message],
        *,
        schema: Optional[Dict[str, Any]] = None,
        schema_name: Optional[str] = None,
        seed_context: Any = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        priority: int = 0,
        timeout: Optional[float] = None,
        use_cache: bool = True,
    ) -> CompletionResult:
        errors, warnings = validate_messages(messages)
        if errors:
            raise MessageValidationError(errors)
        for warning in warnings:
            logger.debug("%s message warning: %s", operation, warning)

        client = self.client
        if client is None:
            raise AIUnavailableError("OPENAI_API_KEY is not configured.")

        model_name = model or AI_MODEL_DEFAULT
        schema_label = schema_name or f"{operation}_response"
        chat_messages = to_chat_messages(messages)
        seed = self.seeds.get_seed(chat_messages if seed_context is None else seed_context)
        base_key = self.keys.build_key(
            operation,
            {"messages": hash_context(chat_messages), "schema": schema_label if schema else None},
            model_config={"model": model_name, "max_tokens": max_tokens},
        )
        cache_key = create_cache_key_with_seed(base_key, seed)

        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug("%s served from cache key=%s", operation, cache_key)
                return replace(cached, cached=True)

        request: Dict[str, Any] = {"model": model_name, "messages": chat_messages, "seed": seed.seed}
        if max_tokens:
            request["max_completion_tokens"] = max_tokens
        if schema:
            request = with_json_schema(request, schema_label, schema)
        request = cleanup_temperature_parameters(request)

        def _call() -> Any:
            return client.chat.completions.create(**request)

        async def _attempt() -> Any:
            return await asyncio.to_thread(_call)

        outcome = await self.concurrency.run(
            lambda: self.retry.execute(operation, _attempt, timeout=timeout),
            priority=priority,
            label=operation,
        )
        if not outcome.success:
            await self._record(operation, model_name, outcome.duration_ms, None, False, None, error_status(outcome.error))
            raise outcome.error  # type: ignore[misc]

        response = outcome.data
        usage = normalize_usage(_response_usage(response))
        resolved_model = _response_model(response, model_name)
        try:
            text, diagnostics = self.parser.extract_or_raise(response)
            data = None
            if schema:
                data = parse_json_payload(text)
                self.schema_enforcer.validate(data, schema, name=schema_label)
        except Exception:
            await self._record(operation, resolved_model, outcome.duration_ms, usage, False, None, None)
            raise

        await self._record(operation, resolved_model, outcome.duration_ms, usage, True, text, None)
        result = CompletionResult(
            text=text,
            data=data,
            model=resolved_model,
            seed=seed.seed,
            seed_source=seed.source,
            cache_key=cache_key,
            usage=usage,
            duration_ms=outcome.duration_ms,
            attempts=outcome.attempts,
            extraction_method=diagnostics.extraction_method,
            warnings=list(diagnostics.warnings),
        )
        if use_cache:
            self.cache.set(cache_key, result)
        return result

    async def _record(
        self,
        operation: str,
        model: str,
        duration_ms: float,
        usage: Any,
        success: bool,
        text: Optional[str],
        status: Optional[int],
    ) -> None:
        entry = self.monitor.record(
            operation,
            model,
            duration_ms,
            usage,
            success=success,
            response_text=text,
            error_status=status,
        )
        if self.usage_sink is None:
            return
        try:
            await asyncio.to_thread(self.usage_sink, entry)
        except Exception as exc:  # pragma: no cover - persistence is best effort
            logger.warning("Usage persistence failed: %s", exc)

    def stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.stats(),
            "cache_keys": self.keys.stats(),
            "parser": self.parser.stats(),
            "parser_alert": self.parser.should_alert(),
            "schema": self.schema_enforcer.stats(),
            "active_operations": self.retry.active_operations(),
        }


_default_service: Optional[CompletionService] = None


def get_completion_service() -> CompletionService:
    global _default_service
    if _default_service is None:
        _default_service = CompletionService()
    return _default_service


__all__ = [
    "AIUnavailableError",
    "CompletionResult",
    "CompletionService",
    "get_completion_service",
]

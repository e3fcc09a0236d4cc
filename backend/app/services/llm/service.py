"""Rule generation service.

Wraps the external LLM collaborator behind a forced tool call
(``generate_fraud_rule``). Supports:
- Anthropic Direct API (Claude Sonnet / Haiku)
- OpenAI Direct API (GPT-4o family)

Every call is rate limited per caller, served from the generation cache
when the instruction content hash is already known, bounded by a hard
timeout and recorded in ``llm_calls``. Failures are terminal for the
request: there is no retry and no partial parsing of malformed output.
"""

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from app.core.cache import TTLCache, generation_cache
from app.core.config import LLM_MODELS, settings
from app.core.exceptions import (
    GenerationFailure,
    GenerationRateLimitError,
    GenerationTimeoutError,
    MalformedGenerationError,
    RuleGuardException,
)
from app.core.logging import perf_log
from app.core.rate_limit import RateLimiter, generation_rate_limiter
from app.db import SQLiteManager
from app.services.audit_service import utcnow_iso
from app.services.rules.catalog import FeatureCatalog, get_catalog

from .models import GenerationResult, LLMConfig, LLMResponse, ModelInfo
from .prompts import REQUIRED_KEYS, TOOL_NAME, anthropic_tool, build_system_prompt, openai_tool

logger = logging.getLogger(__name__)

PROMPT_PREVIEW_CHARS = 500

# SDK側のタイムアウトは呼び出し全体の待ち時間より少し長くする
SDK_TIMEOUT_MARGIN_SECONDS = 5.0


class RuleGenerationService:
    """Natural language instruction -> structured rule proposal."""

    def __init__(
        self,
        config: LLMConfig | None = None,
        client: Any = None,
        db: SQLiteManager | None = None,
        cache: TTLCache | None = None,
        rate_limiter: RateLimiter | None = None,
        catalog: FeatureCatalog | None = None,
    ):
        """Initialize rule generation service.

        Args:
            config: Optional LLM configuration. Uses settings if not provided.
            client: Pre-built provider client (tests inject a double here).
            db: SQLite manager holding ``llm_calls``.
            cache: Generation cache. Defaults to the process-wide cache.
            rate_limiter: Per-caller limiter. Defaults to the process-wide one.
            catalog: Catalog rendered into the prompt.
        """
        self.config = config or LLMConfig(
            provider=settings.llm_provider,
            model=settings.llm_model,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout_seconds,
        )
        self._client = client
        self.db = db or SQLiteManager()
        self.cache = cache if cache is not None else generation_cache
        self.rate_limiter = rate_limiter or generation_rate_limiter
        self.catalog = catalog or get_catalog()

    def _get_client(self):
        """Get or create the LLM client."""
        if self._client is not None:
            return self._client

        provider = self.config.provider

        if provider == "anthropic":
            from anthropic import Anthropic

            self._client = Anthropic(
                api_key=settings.anthropic_api_key,
                timeout=self.config.timeout + SDK_TIMEOUT_MARGIN_SECONDS,
            )

        elif provider == "openai":
            from openai import OpenAI

            self._client = OpenAI(
                api_key=settings.openai_api_key,
                timeout=self.config.timeout + SDK_TIMEOUT_MARGIN_SECONDS,
            )

        else:
            raise GenerationFailure(
                f"Unknown provider: {provider}", provider=provider, error_type="provider"
            )

        return self._client

    def content_hash(self, instruction: str) -> str:
        """Cache key: model, temperature and normalized instruction."""
        return TTLCache.make_key(
            self.config.provider,
            self.config.model,
            self.config.temperature,
            instruction.strip(),
        )

    def generate(self, instruction: str, actor: str = "unknown") -> GenerationResult:
        """Generate a rule proposal for ``instruction``.

        Args:
            instruction: Analyst instruction (already passed the policy gate).
            actor: Caller identity used for rate limiting and the call log.

        Returns:
            GenerationResult with the raw rule dict and metadata.

        Raises:
            GenerationRateLimitError: Caller exceeded the per-minute budget.
            GenerationTimeoutError: Provider did not answer in time.
            MalformedGenerationError: No tool call, or arguments not a JSON
                object with the required keys.
            GenerationFailure: Any other provider error.
        """
        provider, model = self.config.provider, self.config.model
        content_hash = self.content_hash(instruction)

        if not self.rate_limiter.is_allowed(actor):
            retry_after = self.rate_limiter.get_reset_time(actor)
            logger.warning("Generation rate limit exceeded for %s", actor)
            raise GenerationRateLimitError(
                f"Rate limit exceeded. Try again in {retry_after} seconds",
                limit=self.rate_limiter.max_requests,
                window_seconds=self.rate_limiter.window_seconds,
                retry_after_seconds=retry_after,
                provider=provider,
                model=model,
                content_hash=content_hash,
            )

        cached = self.cache.get(content_hash)
        if cached is not None:
            result = GenerationResult(
                rule=dict(cached["rule"]),
                model=model,
                provider=provider,
                content_hash=content_hash,
                cached=True,
                tokens=cached["tokens"],
            )
            self._record_call(instruction, result, actor=actor)
            logger.info(
                "Generation cache hit",
                extra={"content_hash": content_hash[:16], "cached": True},
            )
            return result

        start_time = time.perf_counter()
        try:
            response = self._call_with_timeout(instruction)
            rule = self._check_required_keys(response.arguments)
        except RuleGuardException as e:
            if isinstance(e, GenerationFailure):
                e.detail.setdefault("content_hash", content_hash)
                e.detail.setdefault("provider", provider)
                e.detail.setdefault("model", model)
            self._record_failure(instruction, content_hash, start_time, e, actor)
            raise
        except Exception as e:
            failure = GenerationFailure(
                f"Provider call failed: {e}",
                provider=provider,
                model=model,
                content_hash=content_hash,
                error_type="provider",
            )
            self._record_failure(instruction, content_hash, start_time, failure, actor)
            raise failure from e

        latency_ms = (time.perf_counter() - start_time) * 1000
        result = GenerationResult(
            rule=rule,
            model=response.model or model,
            provider=provider,
            content_hash=content_hash,
            cached=False,
            latency_ms=latency_ms,
            tokens=response.total_tokens,
        )
        self.cache.set(content_hash, {"rule": dict(rule), "tokens": response.total_tokens})
        self._record_call(
            instruction,
            result,
            actor=actor,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )
        perf_log.info(
            "rule_generation",
            extra={"provider": provider, "model": model, "duration_ms": latency_ms},
        )
        return result

    def _call_with_timeout(self, instruction: str) -> LLMResponse:
        client = self._get_client()
        system = build_system_prompt(self.catalog)

        if self.config.provider == "anthropic":
            call = self._generate_anthropic
        else:
            call = self._generate_openai

        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(call, client, instruction, system)
        try:
            return future.result(timeout=self.config.timeout)
        except TimeoutError as e:
            future.cancel()
            raise GenerationTimeoutError(
                f"Rule generation timed out after {self.config.timeout}s",
                timeout_seconds=self.config.timeout,
            ) from e
        except Exception as e:
            if self._is_provider_timeout(e):
                raise GenerationTimeoutError(
                    f"Provider timed out: {e}",
                    timeout_seconds=self.config.timeout,
                ) from e
            raise
        finally:
            # 応答しないスレッドの完了は待たない
            executor.shutdown(wait=False, cancel_futures=True)

    def _is_provider_timeout(self, exc: Exception) -> bool:
        """SDK固有のタイムアウト例外かどうか"""
        if self.config.provider == "anthropic":
            from anthropic import APITimeoutError
        else:
            from openai import APITimeoutError
        return isinstance(exc, APITimeoutError)

    def _generate_anthropic(self, client, instruction: str, system: str) -> LLMResponse:
        """Generate using Anthropic API with a forced tool."""
        start_time = time.perf_counter()
        response = client.messages.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            system=system,
            messages=[{"role": "user", "content": instruction}],
            tools=[anthropic_tool(self.catalog)],
            tool_choice={"type": "tool", "name": TOOL_NAME},
        )

        tool_use = next(
            (
                block
                for block in response.content
                if getattr(block, "type", None) == "tool_use"
                and getattr(block, "name", None) == TOOL_NAME
            ),
            None,
        )
        if tool_use is None:
            raise MalformedGenerationError("Model did not return a generate_fraud_rule tool call")

        return LLMResponse(
            arguments=self._as_object(tool_use.input),
            model=response.model,
            provider="anthropic",
            usage={
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
            latency_ms=(time.perf_counter() - start_time) * 1000,
            raw_response=response,
        )

    def _generate_openai(self, client, instruction: str, system: str) -> LLMResponse:
        """Generate using OpenAI API with a forced function."""
        start_time = time.perf_counter()
        response = client.chat.completions.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": instruction},
            ],
            tools=[openai_tool(self.catalog)],
            tool_choice={"type": "function", "function": {"name": TOOL_NAME}},
        )

        message = response.choices[0].message
        tool_call = next(
            (c for c in (message.tool_calls or []) if c.function.name == TOOL_NAME),
            None,
        )
        if tool_call is None or not tool_call.function.arguments:
            raise MalformedGenerationError("Model did not return a generate_fraud_rule function call")

        return LLMResponse(
            arguments=self._as_object(tool_call.function.arguments),
            model=response.model,
            provider="openai",
            usage={
                "input_tokens": response.usage.prompt_tokens,
                "output_tokens": response.usage.completion_tokens,
            },
            latency_ms=(time.perf_counter() - start_time) * 1000,
            raw_response=response,
        )

    @staticmethod
    def _as_object(arguments: Any) -> dict[str, Any]:
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError as e:
                raise MalformedGenerationError(
                    f"Tool arguments are not valid JSON: {e.msg}"
                ) from e
        if not isinstance(arguments, dict):
            raise MalformedGenerationError(
                f"Tool arguments must be a JSON object, got {type(arguments).__name__}"
            )
        return arguments

    @staticmethod
    def _check_required_keys(rule: dict[str, Any]) -> dict[str, Any]:
        missing = [key for key in REQUIRED_KEYS if key not in rule]
        if missing:
            raise MalformedGenerationError(
                f"Generated rule is missing required keys: {', '.join(missing)}",
                missing_keys=missing,
            )
        return rule

    def _record_call(
        self,
        instruction: str,
        result: GenerationResult,
        *,
        actor: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> None:
        self.db.insert(
            "llm_calls",
            {
                "timestamp": utcnow_iso(),
                "provider": result.provider,
                "model": result.model,
                "content_hash": result.content_hash,
                "prompt_preview": instruction[:PROMPT_PREVIEW_CHARS],
                "cached": int(result.cached),
                "success": 1,
                "latency_ms": result.latency_ms,
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "actor": actor,
            },
        )

    def _record_failure(
        self,
        instruction: str,
        content_hash: str,
        start_time: float,
        error: RuleGuardException,
        actor: str,
    ) -> None:
        logger.error(
            "Rule generation failed: %s",
            error.message,
            extra={"content_hash": content_hash[:16], "error_code": error.error_code},
        )
        self.db.insert(
            "llm_calls",
            {
                "timestamp": utcnow_iso(),
                "provider": self.config.provider,
                "model": self.config.model,
                "content_hash": content_hash,
                "prompt_preview": instruction[:PROMPT_PREVIEW_CHARS],
                "cached": 0,
                "success": 0,
                "latency_ms": (time.perf_counter() - start_time) * 1000,
                "error_message": error.message,
                "actor": actor,
            },
        )

    def list_calls(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent generation calls, newest first."""
        rows = self.db.execute(
            "SELECT * FROM llm_calls ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return [dict(row) for row in rows]

    @staticmethod
    def get_available_models() -> dict[str, list[ModelInfo]]:
        """Get all available models grouped by provider."""
        result = {}
        for provider, models in LLM_MODELS.items():
            result[provider] = [
                ModelInfo(
                    id=model_id,
                    name=info["name"],
                    provider=provider,
                    tier=info["tier"],
                    cost=info["cost"],
                )
                for model_id, info in models.items()
            ]
        return result

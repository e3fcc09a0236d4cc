"""LLM Data Models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal


@dataclass
class LLMConfig:
    """Configuration for rule generation calls."""

    provider: Literal["anthropic", "openai"]
    model: str
    temperature: float = 0.1
    max_tokens: int = 2048
    timeout: float = 30.0

    # Provider-specific options
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMResponse:
    """Forced tool-call response from the provider."""

    arguments: dict[str, Any]
    model: str
    provider: str
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: float = 0.0
    created_at: datetime = field(default_factory=datetime.now)
    raw_response: Any = None

    @property
    def input_tokens(self) -> int:
        return self.usage.get("input_tokens", 0)

    @property
    def output_tokens(self) -> int:
        return self.usage.get("output_tokens", 0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class GenerationResult:
    """Structured rule proposal plus generation metadata."""

    rule: dict[str, Any]
    model: str
    provider: str
    content_hash: str
    cached: bool = False
    latency_ms: float = 0.0
    tokens: int = 0

    def metadata(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "provider": self.provider,
            "cached": self.cached,
            "latency_ms": round(self.latency_ms, 2),
            "tokens": self.tokens,
            "content_hash": self.content_hash,
        }


@dataclass
class ModelInfo:
    """Information about an LLM model."""

    id: str
    name: str
    provider: str
    tier: Literal["premium", "balanced", "fast", "reasoning"]
    cost: Literal["very_high", "high", "medium", "low", "very_low"]
    supports_tools: bool = True

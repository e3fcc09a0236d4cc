"""LLM Service Module (rule generation)."""

from .models import GenerationResult, LLMConfig, LLMResponse
from .prompts import TOOL_NAME, build_system_prompt
from .service import RuleGenerationService

__all__ = [
    "RuleGenerationService",
    "GenerationResult",
    "LLMConfig",
    "LLMResponse",
    "TOOL_NAME",
    "build_system_prompt",
]

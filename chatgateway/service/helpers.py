from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from chatgateway.logging import get_logger
from chatgateway.service.llm import LLMService
from chatgateway.service.model_backend import CompletionRequest, TokenUsage
from chatgateway.service.quota import QuotaLedger
from chatgateway.service.usage import UsageAccountant


@dataclass(frozen=True)
class HelperProfile:
    model: str
    max_tokens: int
    temperature: float


EXAMPLE_PROFILE = HelperProfile(model="gpt-4o", max_tokens=500, temperature=0.7)
ENHANCE_PROFILE = HelperProfile(model="gpt-4o", max_tokens=800, temperature=0.2)

EXAMPLE_FOCUS: Dict[str, str] = {
    "creative": (
        "Write a creative piece that shows:\n"
        "- vivid, concrete imagery\n"
        "- a distinct narrative voice\n"
        "- emotional weight\n"
        "- deliberate structure and pacing"
    ),
    "coding": (
        "Write a code sample that shows:\n"
        "- clear structure and naming\n"
        "- useful comments where they help\n"
        "- a readable, efficient implementation\n"
        "- current idioms for the language"
    ),
    "analysis": (
        "Write an analytical piece that shows:\n"
        "- a stated method and line of reasoning\n"
        "- evidence for each claim\n"
        "- a systematic breakdown of the problem\n"
        "- conclusions with recommendations"
    ),
    "general": (
        "Write a well-organised example that shows:\n"
        "- clear communication\n"
        "- coverage of the key points\n"
        "- practical, actionable detail\n"
        "- a professional tone"
    ),
}

EXAMPLE_TEMPLATE = """{focus}

The user asked for: "{user_request}"

Produce Example {example_number} for that request. Keep it under 300 words,
directly relevant, and something the user can learn from or build on.
Show the style and quality they should expect."""

ENHANCE_TEMPLATE = """You are a prompt engineer who rewrites prompts in Role-Task Format.

Task type: {task_type}
Role chosen by the user: {user_role}
User request: "{user_request}"
Current prompt: "{current_prompt}"

Rewrite the current prompt so it states:
1. ROLE: a specific, credible identity for the assistant
2. TASK: concrete, ordered instructions
3. FORMAT: the expected structure and style of the answer
4. CONTEXT: background and constraints that raise quality
5. EXAMPLES: only when they clearly help

Keep the user's intent. Return only the rewritten prompt, without commentary."""


class HelperService:
    """Single-shot completions for the prompt-building helpers.

    The gateway picks the model, so only the monthly token quota applies.
    Usage is recorded like a chat exchange but counts no messages.
    """

    def __init__(
        self, *, llm: LLMService, quota: QuotaLedger, usage: UsageAccountant
    ) -> None:
        self.llm = llm
        self.quota = quota
        self.usage = usage
        self.logger = get_logger(__name__)

    async def _run(
        self, account_id: str, profile: HelperProfile, prompt: str, purpose: str
    ) -> tuple[str, TokenUsage]:
        self.quota.check_monthly_tokens(account_id)
        done = await self.llm.complete(
            CompletionRequest(
                model=profile.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=profile.max_tokens,
                temperature=profile.temperature,
            )
        )
        self.usage.record(
            account_id,
            tokens=done.usage.total_tokens,
            messages=0,
            model_id=done.model_id,
        )
        self.logger.info(
            "helper_completed",
            purpose=purpose,
            model=done.model_id,
            total_tokens=done.usage.total_tokens,
        )
        return done.full_text.strip(), done.usage

    async def generate_example(
        self,
        account_id: str,
        *,
        user_request: str,
        task_type: str = "general",
        example_number: int = 1,
    ) -> dict:
        prompt = EXAMPLE_TEMPLATE.format(
            focus=EXAMPLE_FOCUS.get(task_type, EXAMPLE_FOCUS["general"]),
            user_request=user_request,
            example_number=example_number,
        )
        text, usage = await self._run(account_id, EXAMPLE_PROFILE, prompt, "example")
        return {"example": text, "model": EXAMPLE_PROFILE.model, "usage": usage.to_dict()}

    async def enhance_prompt(
        self,
        account_id: str,
        *,
        user_request: str,
        task_type: str,
        user_role: str,
        current_prompt: str,
    ) -> dict:
        prompt = ENHANCE_TEMPLATE.format(
            task_type=task_type,
            user_role=user_role,
            user_request=user_request,
            current_prompt=current_prompt,
        )
        text, usage = await self._run(account_id, ENHANCE_PROFILE, prompt, "enhance")
        return {
            "enhancedPrompt": text,
            "model": ENHANCE_PROFILE.model,
            "usage": usage.to_dict(),
        }

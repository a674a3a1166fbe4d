from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from openai import OpenAI, OpenAIError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FramingContext:
    goal: str
    workspace: str
    harness: str
    require_approval: bool = False


class GoalFramer(ABC):
    """Turns a conversational request into a self-contained instruction."""

    @abstractmethod
    async def frame(self, context: FramingContext) -> str:
        """Return the instruction handed to the harness."""


class TemplateGoalFramer(GoalFramer):
    def render(self, context: FramingContext) -> str:
        rules = [
            f"Work only inside the '{context.workspace}' workspace; it is your current directory.",
            "Be specific: name the files you create, modify or delete.",
            "Keep going without asking unless you are genuinely blocked.",
            "Finish with a '## Summary' section listing what changed and which files were touched.",
        ]
        if context.require_approval:
            rules.insert(2, "Ask for explicit confirmation before deleting files or running destructive commands.")
        lines = [
            "You are working on a coding task with no access to the conversation that produced it.",
            "",
            "Task:",
            context.goal.strip(),
            "",
            "Rules:",
            *(f"- {rule}" for rule in rules),
        ]
        return "\n".join(lines)

    async def frame(self, context: FramingContext) -> str:
        return self.render(context)


FRAMING_SYSTEM_PROMPT = (
    "Rewrite a user's coding request as a self-contained instruction for an autonomous "
    "coding agent that cannot see the conversation. Be specific, mention file paths and "
    "constraints when they are known, and write one paragraph of 2-4 sentences that "
    "starts with a verb. Reply with the instruction only."
)


class OpenAIGoalFramer(GoalFramer):
    """Asks a chat model to sharpen the goal; falls back to the template."""

    def __init__(
        self,
        *,
        model: str = "gpt-4o-mini",
        max_tokens: int = 200,
        temperature: float = 0.3,
        client: Any | None = None,
        fallback: TemplateGoalFramer | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = client
        self.fallback = fallback or TemplateGoalFramer()

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    @staticmethod
    def _extract_text(payload: Any) -> str:
        choices = getattr(payload, "choices", None)
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        return content.strip() if isinstance(content, str) else ""

    def _user_prompt(self, context: FramingContext) -> str:
        return f"Workspace: {context.workspace}\nHarness: {context.harness}\n\nRequest:\n{context.goal.strip()}"

    async def frame(self, context: FramingContext) -> str:
        def _request() -> Any:
            return self._get_client().chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=[
                    {"role": "system", "content": FRAMING_SYSTEM_PROMPT},
                    {"role": "user", "content": self._user_prompt(context)},
                ],
            )

        try:
            payload = await asyncio.to_thread(_request)
        except OpenAIError as exc:
            logger.warning("Goal framing via %s failed, using template: %s", self.model, exc)
            return self.fallback.render(context)
        sharpened = self._extract_text(payload)
        if not sharpened:
            logger.warning("Goal framing via %s returned nothing, using template", self.model)
            return self.fallback.render(context)
        return self.fallback.render(
            FramingContext(
                goal=sharpened,
                workspace=context.workspace,
                harness=context.harness,
                require_approval=context.require_approval,
            )
        )

import asyncio
from types import SimpleNamespace
from typing import Any

from openai import OpenAIError

from kennel.tasks.framing import FramingContext, OpenAIGoalFramer, TemplateGoalFramer

CONTEXT = FramingContext(goal="add a health check", workspace="proj-a", harness="claude")


class FakeCompletions:
    def __init__(self, reply: str | None = None, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(completions: FakeCompletions) -> Any:
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def test_template_framer_is_self_contained() -> None:
    text = asyncio.run(TemplateGoalFramer().frame(CONTEXT))

    assert "Task:\nadd a health check" in text
    assert "'proj-a' workspace" in text
    assert "## Summary" in text
    assert "confirmation" not in text


def test_template_framer_adds_approval_rule() -> None:
    context = FramingContext(goal="clean up", workspace="proj-a", harness="claude", require_approval=True)

    assert "explicit confirmation" in TemplateGoalFramer().render(context)


def test_openai_framer_uses_model_reply() -> None:
    completions = FakeCompletions(reply="Add a GET /health endpoint in src/app.py that returns 200.")
    framer = OpenAIGoalFramer(model="gpt-4o-mini", client=_client(completions))

    text = asyncio.run(framer.frame(CONTEXT))

    assert "Task:\nAdd a GET /health endpoint in src/app.py that returns 200." in text
    assert completions.calls[0]["model"] == "gpt-4o-mini"
    assert completions.calls[0]["max_tokens"] == 200
    assert "add a health check" in completions.calls[0]["messages"][1]["content"]


def test_openai_framer_falls_back_on_api_error() -> None:
    completions = FakeCompletions(error=OpenAIError("connection refused"))
    framer = OpenAIGoalFramer(client=_client(completions))

    text = asyncio.run(framer.frame(CONTEXT))

    assert text == TemplateGoalFramer().render(CONTEXT)


def test_openai_framer_falls_back_on_empty_reply() -> None:
    framer = OpenAIGoalFramer(client=_client(FakeCompletions(reply="   ")))

    assert asyncio.run(framer.frame(CONTEXT)) == TemplateGoalFramer().render(CONTEXT)

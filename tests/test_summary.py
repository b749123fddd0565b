import asyncio
import json
from types import SimpleNamespace
from typing import Any

import pytest

from polish.models import CommitInfo, StopReason
from polish.summary import SUMMARY_INSTRUCTIONS, SummaryGenerator, fallback_summary

COMMITS = [
    CommitInfo(hash="a1", message="fix(lint): fix-lint - +4.0 pts", score_delta=4.0),
    CommitInfo(hash="b2", message="fix(types): fix-types - +6.0 pts", score_delta=6.0),
]


class FakeResponses:
    def __init__(self, reply: Any = None, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.reply


def _generate(generator: SummaryGenerator, **overrides: Any) -> Any:
    kwargs: dict[str, Any] = {
        "mission": "Tidy the parser",
        "initial_score": 60.0,
        "final_score": 70.0,
        "commits": COMMITS,
        "stopped_reason": StopReason.PLATEAU,
    }
    kwargs.update(overrides)
    return asyncio.run(generator.generate(**kwargs))


def test_fallback_summary_lists_commits_and_delta() -> None:
    summary = fallback_summary(
        mission=None,
        initial_score=60.0,
        final_score=70.0,
        commits=COMMITS,
        stopped_reason=StopReason.MAX_SCORE,
    )

    assert summary.overview == "Session on metric polishing produced 2 commit(s)."
    assert summary.achievements == [commit.message for commit in COMMITS]
    assert summary.metrics == "Score 60.0 -> 70.0 (+10.0 pts)"
    assert summary.explanation == "The composite score reached the target."


def test_model_reply_is_parsed() -> None:
    reply = {
        "overview": "Two fixes landed.",
        "achievements": ["Lint is clean", "Types check"],
        "metrics": "60 -> 70",
        "explanation": "No further gains.",
    }
    responses = FakeResponses(SimpleNamespace(output_text=f"Sure!\n{json.dumps(reply)}"))
    generator = SummaryGenerator(model="test-model", client=SimpleNamespace(responses=responses))

    summary = _generate(generator)

    assert summary.to_dict() == reply
    [call] = responses.calls
    assert call["model"] == "test-model"
    assert call["input"][0] == {"role": "system", "content": SUMMARY_INSTRUCTIONS}
    assert '"mission": "Tidy the parser"' in call["input"][1]["content"]


@pytest.mark.parametrize(
    "responses",
    [
        FakeResponses(error=RuntimeError("network down")),
        FakeResponses(SimpleNamespace(output_text="not json at all")),
        FakeResponses({"output_text": '{"achievements": []}'}),
    ],
)
def test_unusable_replies_fall_back_to_the_template(responses: FakeResponses) -> None:
    generator = SummaryGenerator(client=SimpleNamespace(responses=responses))

    summary = _generate(generator)

    assert summary.overview == 'Session on "Tidy the parser" produced 2 commit(s).'


def test_generator_without_client_uses_the_template(monkeypatch: pytest.MonkeyPatch) -> None:
    def _no_client() -> Any:
        raise RuntimeError("missing api key")

    monkeypatch.setattr("polish.summary.OpenAI", _no_client)
    generator = SummaryGenerator()

    assert generator.available is False
    assert _generate(generator, stopped_reason=StopReason.APPROVED).explanation == (
        "The reviewers approved the changes."
    )

from __future__ import annotations

from collections.abc import Sequence

from polish.config import Strategy
from polish.models import FailedAttempt, MetricResult, Phase
from polish.specialists.base import SpecialistAgent


class FixerAgent(SpecialistAgent):
    role = "fixer"
    phase = Phase.TESTING
    permission_mode = "acceptEdits"
    continue_prompt = "Continue the fix in progress."
    fallback_prompt = """
You are a code quality expert. You fix exactly one problem per invocation.

## Rules
- One atomic change only
- Never break existing behaviour
- Run the relevant checks after your change when you can
""".strip()

    @staticmethod
    def build_system_prompt(rules: Sequence[str]) -> str:
        if not rules:
            return FixerAgent.fallback_prompt
        return FixerAgent.fallback_prompt + "\n\n## Project rules\n" + "\n".join(
            f"- {rule}" for rule in rules
        )

    @staticmethod
    def build_prompt(
        strategy: Strategy,
        metric: MetricResult,
        *,
        failed_attempts: Sequence[FailedAttempt] = (),
        rules: Sequence[str] = (),
        feedback: str | None = None,
    ) -> str:
        direction = "higher is better" if metric.higher_is_better else "lower is better"
        lines = [
            "Fix ONE problem in this codebase.",
            "",
            "## Metric to improve",
            f"- **{metric.name}**: {metric.raw_value:g} (score: {metric.score:.1f}/100)",
            f"- Target: {metric.target:g}",
            f"- {direction}",
            "",
            "## Task",
            strategy.prompt or f"Improve the {metric.name} metric.",
            "",
            "## Strict rules",
            *(f"- {rule}" for rule in rules),
            "- One atomic change",
            "- Check that the tests still pass after the change",
        ]
        if failed_attempts:
            lines.extend(["", "## Failed attempts (do not repeat)"])
            lines.extend(f"- {attempt.strategy} -> {attempt.reason}" for attempt in failed_attempts)
        if feedback:
            lines.extend(["", "## Reviewer feedback to keep in mind", feedback])
        lines.extend(["", "Analyse the problem first, then apply the fix."])
        return "\n".join(lines)

from __future__ import annotations

from collections.abc import Sequence

from polish.config import Thoroughness
from polish.models import Phase, PlanMessage
from polish.specialists.base import SpecialistAgent

THOROUGHNESS_HINTS: dict[str, str] = {
    "quick": "Explore briefly and propose a simple plan.",
    "medium": "Explore in detail and propose a well thought-out plan.",
    "thorough": "Analyse the codebase exhaustively before proposing a complete plan.",
}

PLAN_FORMAT = """
Return the plan as a single ```json block:

```json
{
  "summary": "One or two sentences on what the plan achieves",
  "approach": ["First step", "Second step"],
  "files_to_modify": ["path/to/existing.py"],
  "files_to_create": ["path/to/new.py"],
  "risks": ["Optional risk"]
}
```
""".strip()


class PlannerAgent(SpecialistAgent):
    role = "planner"
    phase = Phase.PLANNING
    permission_mode = "plan"
    fallback_prompt = f"""
You are a software architect planning an implementation.

## Process
1. Explore: understand the structure, the technologies and the conventions
2. Analyse: read the key files and their dependencies
3. Design: propose a short plan and name its risks

## Rules
- Never modify files; you are read-only
- Be precise about the files involved
- Reuse the patterns that already exist in the project
- Keep the plan simple and every step testable

{PLAN_FORMAT}
""".strip()

    @staticmethod
    def build_prompt(mission: str, thoroughness: Thoroughness = "medium") -> str:
        return (
            f"## Mission to plan\n{mission}\n\n"
            f"## Exploration level: {thoroughness.upper()}\n"
            f"{THOROUGHNESS_HINTS.get(thoroughness, THOROUGHNESS_HINTS['medium'])}\n\n"
            "## Instructions\n"
            "1. Explore the codebase to understand its structure\n"
            "2. Identify the files relevant to the mission\n"
            "3. Note existing patterns to reuse\n"
            "4. Propose the plan in the JSON format of your instructions"
        )

    @staticmethod
    def build_continuation_prompt(
        mission: str,
        messages: Sequence[PlanMessage],
        thoroughness: Thoroughness = "medium",
    ) -> str:
        parts = [
            f"## Original mission\n{mission}",
            f"## Exploration level: {thoroughness.upper()}",
            "## Planning conversation so far",
        ]
        for message in messages:
            speaker = "User" if message.role == "user" else "Assistant"
            parts.append(f"### {speaker}\n{message.content}")
        parts.append(
            "## Instructions\n"
            "Take all of the feedback above into account, answer its questions, "
            "and return a revised plan in the same JSON format."
        )
        return "\n\n".join(parts)

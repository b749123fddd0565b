from __future__ import annotations

from polish.models import Phase, Plan
from polish.specialists.base import SpecialistAgent


class ImplementerAgent(SpecialistAgent):
    role = "implementer"
    phase = Phase.IMPLEMENT
    permission_mode = "acceptEdits"
    continue_prompt = "Continue implementing the remaining features."
    fallback_prompt = """
You are an expert developer implementing a feature in an existing project.

## Approach
1. Explore: understand the project, its structure and its patterns
2. Plan: identify the files to create or modify
3. Implement: write the code
4. Verify: make sure the code builds

## Rules
- Follow the project's conventions
- The code must build without syntax errors
- Warnings and incomplete types are acceptable
- Prefer incremental changes and Edit over Write for existing files
""".strip()

    @staticmethod
    def build_prompt(
        mission: str,
        *,
        feedback: str | None = None,
        retry_count: int = 0,
        plan: Plan | None = None,
    ) -> str:
        sections = [
            "Implement the following feature in this project.",
            f"## Mission\n{mission}",
        ]
        if plan is not None:
            sections.append(f"## Approved plan\n{plan.to_markdown()}")
        if feedback:
            heading = "## Reviewer feedback to address"
            if retry_count:
                heading += f" (attempt {retry_count + 1})"
            sections.append(f"{heading}\n{feedback}")
        sections.append(
            "## Instructions\n"
            "1. Explore the project with Glob, Grep and Read to learn its structure, "
            "conventions and the files involved.\n"
            "2. Implement the feature: create files with Write, change existing ones with Edit.\n"
            "3. The code may be imperfect; it is polished automatically afterwards.\n"
            "4. Do not touch configuration files without a reason."
        )
        return "\n\n".join(sections)

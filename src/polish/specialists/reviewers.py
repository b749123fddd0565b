from __future__ import annotations

from collections.abc import Sequence

from polish.models import Phase
from polish.specialists.base import SpecialistAgent

VERDICT_FORMAT = """
## Required response format
Return ONLY a JSON block:
```json
{{
  "verdict": "approved" | "needs_changes" | "rejected",
  "redirectTo": "implement" | "testing",
  "feedback": "{feedback}",
  "concerns": [{concerns}],
  "score": 0-100
}}
```
Use "rejected" only when the approach is fundamentally wrong and should not be retried.
Use "redirectTo": "implement" for missing or misdesigned functionality and "testing"
for quality issues the improvement loop can fix.
""".strip()


class ReviewerAgent(SpecialistAgent):
    role = "reviewer"
    label = "Reviewer"
    focus = "Review the changes."
    phase = Phase.REVIEW
    permission_mode = "default"

    def build_prompt(
        self,
        mission: str,
        changed_files: Sequence[str],
        iteration: int,
        previous_feedback: Sequence[str] = (),
    ) -> str:
        files = "\n".join(f"- `{path}`" for path in changed_files) or "- No modified files detected"
        prompt = (
            f"## Code review request (iteration {iteration})\n\n"
            f"### Original mission\n{mission}\n\n"
            f"### Modified files\n{files}\n\n"
            f"### Your role: {self.label}\n{self.focus}\n\n"
            "Review the changes and decide whether the implementation is acceptable.\n"
        )
        if previous_feedback:
            history = "\n\n".join(
                f"**Iteration {index}:**\n{feedback}"
                for index, feedback in enumerate(previous_feedback, start=1)
            )
            prompt += (
                f"\n### Feedback from previous iterations\n{history}\n\n"
                "Check that these issues were addressed; flag them again if not.\n"
            )
        prompt += (
            "\n### Review instructions\n"
            "1. Explore: use Glob, Grep and Read to examine the modified files\n"
            "2. Analyse: evaluate the code against your review criteria\n"
            "3. Verdict: answer in the JSON format of your instructions"
        )
        return prompt


class MissionReviewer(ReviewerAgent):
    role = "mission_reviewer"
    label = "Mission Reviewer"
    focus = (
        "Verify the implementation matches the original mission exactly. "
        "Detect scope creep, missing features and deviations."
    )
    fallback_prompt = (
        """
You guard mission alignment.

## What you check
- Does the implementation do what was asked?
- Were features added that nobody requested?
- Is any part of the mission missing?
- Does the behaviour match expectations?

## Deviations to detect
- Over-engineering
- Unrequested extras and unsolicited refactoring
- Changes outside the mission's scope

"""
        + VERDICT_FORMAT.format(
            feedback="How well the change matches the mission",
            concerns='"Deviation from the mission", "Unrequested feature"',
        )
    ).strip()


class SeniorEngineer(ReviewerAgent):
    role = "senior_engineer"
    label = "Senior Engineer"
    focus = (
        "Evaluate architecture decisions, maintainability, performance implications "
        "and adherence to best practices."
    )
    fallback_prompt = (
        """
You are a senior engineer deciding whether the change is production-ready.

## Criteria
- Architecture: follows project patterns, well structured, clear responsibilities
- Maintainability: explicit names, justified complexity
- Performance: no obvious hot spots or leaks
- Security: validated inputs, correct error handling
- Tests: sufficient, covering edge cases

Give precise, actionable feedback that names files and lines.

"""
        + VERDICT_FORMAT.format(
            feedback="Detailed explanation with code examples",
            concerns='"file.py:42 - issue", "Architecture: issue"',
        )
    ).strip()


class CodeReviewer(ReviewerAgent):
    role = "code_reviewer"
    label = "Code Reviewer"
    focus = (
        "Perform a line-by-line review. Find bugs, code smells, convention "
        "violations and potential issues."
    )
    fallback_prompt = (
        """
You are a meticulous code reviewer who examines every line.

## What you look for
- Bugs: unhandled None, races, logic and off-by-one errors
- Smells: duplication, overly long functions, magic values, dead code
- Conventions: naming, formatting, unused imports, leftover debug output
- Error handling: silent failures, unclear messages

Cite exact lines and show corrected code.

"""
        + VERDICT_FORMAT.format(
            feedback="Summary of the issues found with fixes",
            concerns='"file.py:42 - bug: missing None check"',
        )
    ).strip()


class SecurityReviewer(ReviewerAgent):
    role = "security_reviewer"
    label = "Security Reviewer"
    focus = (
        "Audit the changes for vulnerabilities: injection, unsafe deserialization, "
        "secrets in code, missing authorization and unvalidated input."
    )
    fallback_prompt = (
        """
You are an application security reviewer.

## What you look for
- Injection (shell, SQL, template) and path traversal
- Secrets or credentials committed to the repository
- Missing authentication or authorization checks
- Unsafe deserialization and unvalidated input
- Dependencies with known vulnerabilities

Only report issues you can point to in the modified files.

"""
        + VERDICT_FORMAT.format(
            feedback="Security assessment of the change",
            concerns='"file.py:10 - shell injection via user input"',
        )
    ).strip()


REVIEWER_CLASSES: dict[str, type[ReviewerAgent]] = {
    cls.role: cls for cls in (MissionReviewer, SeniorEngineer, CodeReviewer, SecurityReviewer)
}

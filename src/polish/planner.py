from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from polish.agent import AgentRunner
from polish.capabilities import ResolvedOptions, read_only
from polish.config import Thoroughness
from polish.events import EventChannel, EventType
from polish.models import Phase, Plan, PlanMessage
from polish.specialists.planner import PlannerAgent

logger = logging.getLogger(__name__)

JSON_BLOCK_PATTERN = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)
MAX_TURNS_BY_THOROUGHNESS: dict[str, int] = {"quick": 30, "medium": 50, "thorough": 100}
STATUS_MESSAGES: dict[str, str] = {
    "quick": "Quick exploration and plan generation...",
    "medium": "Exploring the codebase and drafting an implementation plan...",
    "thorough": "Deep analysis of the codebase for a comprehensive plan...",
}
FORMAT_REMINDER = "Return the plan as a single ```json block in the required format."


def parse_plan(text: str) -> Plan | None:
    """Read the bullet-list plan from the first valid ```json block, if any."""
    for match in JSON_BLOCK_PATTERN.finditer(text):
        try:
            payload = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict) or not isinstance(payload.get("approach"), list):
            continue
        return Plan.from_dict(payload)
    return None


@dataclass(slots=True)
class PlanningContext:
    mission: str
    project_path: Path
    thoroughness: Thoroughness = "medium"
    messages: list[PlanMessage] = field(default_factory=list)


class PlanAction(StrEnum):
    APPROVE = "approve"
    REVISE = "revise"
    REJECT = "reject"


@dataclass(slots=True)
class PlanDecision:
    action: PlanAction
    feedback: str | None = None

    @classmethod
    def approve(cls) -> PlanDecision:
        return cls(PlanAction.APPROVE)

    @classmethod
    def revise(cls, feedback: str) -> PlanDecision:
        return cls(PlanAction.REVISE, feedback)

    @classmethod
    def reject(cls, feedback: str | None = None) -> PlanDecision:
        return cls(PlanAction.REJECT, feedback)


ApproveCallback = Callable[[Plan, PlanningContext], "PlanDecision | Awaitable[PlanDecision]"]


@dataclass(slots=True)
class PlanningOutcome:
    approved: bool
    plan: Plan | None = None
    rounds: int = 0
    messages: list[PlanMessage] = field(default_factory=list)
    reason: str | None = None


def auto_approve(plan: Plan, context: PlanningContext) -> PlanDecision:
    return PlanDecision.approve()


class Planner:
    def __init__(
        self,
        runner: AgentRunner,
        channel: EventChannel,
        *,
        options: ResolvedOptions | None = None,
        system_prompt: str | None = None,
        max_rounds: int = 5,
        abort: asyncio.Event | None = None,
    ) -> None:
        self.agent = PlannerAgent(runner, system_prompt_override=system_prompt)
        self.channel = channel
        self.options = read_only(options)
        self.max_rounds = max(1, max_rounds)
        self.abort = abort

    async def _plan(self, context: PlanningContext, prompt: str) -> Plan | None:
        emit = self.channel.emit
        emit(
            EventType.STATUS,
            {
                "phase": str(Phase.PLANNING),
                "message": STATUS_MESSAGES.get(context.thoroughness, STATUS_MESSAGES["medium"]),
                "thoroughness": context.thoroughness,
            },
        )
        chunks: list[str] = []

        def _stream(chunk: str) -> None:
            chunks.append(chunk)
            emit(EventType.PLAN_STREAM, {"chunk": chunk})

        response = await self.agent.run(
            prompt,
            context.project_path,
            options=self.options,
            emit=emit,
            abort=self.abort,
            on_text=_stream,
            max_turns=MAX_TURNS_BY_THOROUGHNESS.get(context.thoroughness, 50),
        )
        full_text = "\n".join(chunks).strip() or response.content
        if full_text:
            message = PlanMessage(role="assistant", content=full_text)
            context.messages.append(message)
            emit(EventType.PLAN_MESSAGE, {"message": message.to_dict()})

        plan = parse_plan(full_text) or parse_plan(response.content)
        if plan is None:
            emit(
                EventType.STATUS,
                {"phase": str(Phase.PLANNING), "message": "No structured plan found in response"},
            )
            return None
        emit(EventType.PLAN, plan.to_dict())
        emit(
            EventType.STATUS,
            {"phase": str(Phase.PLANNING), "message": "Plan ready for review"},
        )
        return plan

    async def run_planning(self, context: PlanningContext) -> Plan | None:
        if context.messages:
            prompt = PlannerAgent.build_continuation_prompt(
                context.mission, context.messages, context.thoroughness
            )
        else:
            prompt = PlannerAgent.build_prompt(context.mission, context.thoroughness)
        return await self._plan(context, prompt)

    async def continue_planning(self, context: PlanningContext, user_message: str) -> Plan | None:
        message = PlanMessage(role="user", content=user_message)
        context.messages.append(message)
        self.channel.emit(EventType.PLAN_MESSAGE, {"message": message.to_dict()})
        return await self.run_planning(context)

    async def negotiate(
        self, context: PlanningContext, approve: ApproveCallback | None = None
    ) -> PlanningOutcome:
        """Plan, then loop on reviewer decisions until approval, rejection or the round limit."""
        callback = approve or auto_approve
        plan = await self.run_planning(context)
        rounds = 1

        while True:
            if self.abort is not None and self.abort.is_set():
                return self._reject(context, plan, rounds, "Planning cancelled")
            if plan is None:
                if rounds >= self.max_rounds:
                    return self._reject(context, None, rounds, "No plan produced")
                rounds += 1
                plan = await self.continue_planning(context, FORMAT_REMINDER)
                continue

            decision = callback(plan, context)
            if inspect.isawaitable(decision):
                decision = await decision

            if decision.action is PlanAction.APPROVE:
                self.channel.emit(
                    EventType.PLAN_APPROVED, {"plan": plan.to_dict(), "rounds": rounds}
                )
                return PlanningOutcome(
                    approved=True, plan=plan, rounds=rounds, messages=list(context.messages)
                )
            if decision.action is PlanAction.REJECT and not decision.feedback:
                return self._reject(context, plan, rounds, "Plan rejected")
            if rounds >= self.max_rounds:
                return self._reject(context, plan, rounds, "Maximum planning rounds reached")

            rounds += 1
            plan = await self.continue_planning(context, decision.feedback or "")

    def _reject(
        self, context: PlanningContext, plan: Plan | None, rounds: int, reason: str
    ) -> PlanningOutcome:
        logger.info("Planning ended without approval: %s", reason)
        self.channel.emit(EventType.PLAN_REJECTED, {"reason": reason, "rounds": rounds})
        return PlanningOutcome(
            approved=False,
            plan=plan,
            rounds=rounds,
            messages=list(context.messages),
            reason=reason,
        )

from polish.specialists.base import SpecialistAgent, SpecialistResponse
from polish.specialists.fixer import FixerAgent
from polish.specialists.implementer import ImplementerAgent
from polish.specialists.planner import PlannerAgent
from polish.specialists.reviewers import (
    REVIEWER_CLASSES,
    CodeReviewer,
    MissionReviewer,
    ReviewerAgent,
    SecurityReviewer,
    SeniorEngineer,
)

__all__ = [
    "REVIEWER_CLASSES",
    "CodeReviewer",
    "FixerAgent",
    "ImplementerAgent",
    "MissionReviewer",
    "PlannerAgent",
    "ReviewerAgent",
    "SecurityReviewer",
    "SeniorEngineer",
    "SpecialistAgent",
    "SpecialistResponse",
]

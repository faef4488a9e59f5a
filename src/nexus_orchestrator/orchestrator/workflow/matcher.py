"""Workflow matching: score every cataloged workflow against a classified task.

The score is a weighted sum of independent factors (intent, complexity, keyword
overlap, duration closeness, historical preference, availability), capped at 1.0.
All weights live in :class:`~nexus_orchestrator.core.config.MatcherConfig`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from pydantic import BaseModel, Field, field_validator

from nexus_orchestrator.core.config import MatcherConfig
from nexus_orchestrator.core.errors import NoWorkflowMatchError
from nexus_orchestrator.orchestrator.workflow.definitions import ComplexityTier, WorkflowDefinition
from nexus_orchestrator.orchestrator.workflow.models import HistoryEntry
from nexus_orchestrator.orchestrator.workflow.providers import ProviderRegistry

logger = logging.getLogger(__name__)

SCORE_PRECISION = 6


class ClassifiedTask(BaseModel):
    """Output of the external task classifier."""

    intent_label: str
    complexity_tier: ComplexityTier = ComplexityTier.MEDIUM
    keywords: list[str] = Field(default_factory=list)
    estimated_duration_minutes: float | None = Field(default=None, ge=0)

    @field_validator("intent_label", mode="after")
    @classmethod
    def _normalise_intent(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("keywords", mode="after")
    @classmethod
    def _normalise_keywords(cls, value: list[str]) -> list[str]:
        out: list[str] = []
        for kw in value:
            norm = kw.strip().lower()
            if norm and norm not in out:
                out.append(norm)
        return out


class TaskClassifier(Protocol):
    """Turns free task text into a :class:`ClassifiedTask`. Implemented outside the engine."""

    def classify(self, task_text: str) -> ClassifiedTask: ...


class ScoreBreakdown(BaseModel):
    intent: float = 0.0
    complexity: float = 0.0
    keywords: float = 0.0
    duration: float = 0.0
    history: float = 0.0
    availability: float = 0.0


class WorkflowScore(BaseModel):
    workflow_name: str
    score: float
    breakdown: ScoreBreakdown
    catalog_index: int


class MatchResult(BaseModel):
    recommendation: WorkflowScore
    alternatives: list[WorkflowScore] = Field(default_factory=list)


@dataclass(slots=True)
class WorkflowMatcher:
    config: MatcherConfig = field(default_factory=MatcherConfig)
    providers: ProviderRegistry | None = None

    def score(
        self,
        task: ClassifiedTask,
        workflow: WorkflowDefinition,
        history: Sequence[HistoryEntry] = (),
        *,
        catalog_index: int = 0,
    ) -> WorkflowScore:
        cfg = self.config
        breakdown = ScoreBreakdown(
            intent=cfg.intent_weight if task.intent_label in workflow.intended_for else 0.0,
            complexity=self._complexity_score(task.complexity_tier, workflow.complexity_tier),
            keywords=cfg.keyword_weight * keyword_overlap(workflow.keywords, task.keywords),
            duration=cfg.duration_weight * self._duration_closeness(task, workflow),
            history=cfg.history_weight * self._history_preference(task, workflow, history),
            availability=cfg.availability_weight * self._availability_fraction(workflow),
        )
        total = sum(breakdown.model_dump().values())
        return WorkflowScore(
            workflow_name=workflow.name,
            score=round(min(1.0, total), SCORE_PRECISION),
            breakdown=breakdown,
            catalog_index=catalog_index,
        )

    def rank(
        self,
        task: ClassifiedTask,
        catalog: Sequence[WorkflowDefinition],
        history: Sequence[HistoryEntry] = (),
    ) -> list[WorkflowScore]:
        """Score every workflow; highest first, ties in catalog order."""

        scores = [
            self.score(task, workflow, history, catalog_index=i)
            for i, workflow in enumerate(catalog)
        ]
        return sorted(scores, key=lambda s: (-s.score, s.catalog_index))

    def match(
        self,
        task: ClassifiedTask,
        catalog: Sequence[WorkflowDefinition],
        history: Sequence[HistoryEntry] = (),
    ) -> MatchResult:
        ranked = self.rank(task, catalog, history)
        if not ranked or ranked[0].score < self.config.confidence_threshold:
            best = ranked[0].score if ranked else 0.0
            logger.info(
                "No workflow above confidence threshold",
                extra={
                    "intent": task.intent_label,
                    "best_score": best,
                    "threshold": self.config.confidence_threshold,
                },
            )
            raise NoWorkflowMatchError(
                f"No workflow matches with confidence >= {self.config.confidence_threshold} "
                f"(best score {best})",
                details={
                    "threshold": self.config.confidence_threshold,
                    "candidates": [
                        s.model_dump() for s in ranked[: 1 + self.config.max_alternatives]
                    ],
                },
            )

        result = MatchResult(
            recommendation=ranked[0],
            alternatives=ranked[1 : 1 + self.config.max_alternatives],
        )
        logger.info(
            "Workflow recommended",
            extra={
                "workflow": result.recommendation.workflow_name,
                "score": result.recommendation.score,
            },
        )
        return result

    def _complexity_score(self, task_tier: ComplexityTier, workflow_tier: ComplexityTier) -> float:
        distance = abs(task_tier.rank - workflow_tier.rank)
        if distance == 0:
            return self.config.complexity_weight
        if distance == 1:
            return self.config.adjacent_complexity_weight
        return 0.0

    def _duration_closeness(self, task: ClassifiedTask, workflow: WorkflowDefinition) -> float:
        if task.estimated_duration_minutes is None:
            # No estimate from the classifier: neither reward nor penalise.
            return 0.5
        diff = abs(workflow.estimated_duration_minutes - task.estimated_duration_minutes)
        return max(0.0, 1.0 - diff / self.config.duration_window_minutes)

    def _history_preference(
        self,
        task: ClassifiedTask,
        workflow: WorkflowDefinition,
        history: Sequence[HistoryEntry],
    ) -> float:
        similar = similar_history(task, history)
        if not similar:
            return self.config.history_default
        hits = sum(1 for entry in similar if entry.workflow_name == workflow.name)
        return hits / len(similar)

    def _availability_fraction(self, workflow: WorkflowDefinition) -> float:
        required = sorted(workflow.required_capabilities) + sorted(
            workflow.required_external_services
        )
        if not required or self.providers is None:
            return 1.0
        available = sum(1 for ident in required if self.providers.is_available(ident))
        return available / len(required)


def keyword_overlap(workflow_keywords: Iterable[str], task_keywords: Iterable[str]) -> float:
    """|W ∩ T| / max(|W|, |T|), or 0 when either side is empty."""

    w = {k.lower() for k in workflow_keywords}
    t = {k.lower() for k in task_keywords}
    if not w or not t:
        return 0.0
    return len(w & t) / max(len(w), len(t))


def similar_history(task: ClassifiedTask, history: Sequence[HistoryEntry]) -> list[HistoryEntry]:
    """Past runs whose task description mentions any of the task keywords.

    A resumed run logs one entry per terminal outcome under the same id; only
    its latest entry is kept, so every run counts once.
    """

    if not task.keywords:
        return []
    latest: dict[str, HistoryEntry] = {}
    for entry in history:
        latest.pop(entry.id, None)
        latest[entry.id] = entry
    out: list[HistoryEntry] = []
    for entry in latest.values():
        text = entry.task_description.lower()
        if any(kw in text for kw in task.keywords):
            out.append(entry)
    return out

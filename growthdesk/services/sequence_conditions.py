"""Evaluation of sequence step conditions.

Pure functions: the caller builds an ``EngagementSnapshot`` for the
subscriber (engagement with the previous step's email plus the contact's
tags) and asks whether a step may be sent.
"""
from typing import FrozenSet, Iterable, List

from pydantic import BaseModel, ConfigDict

from growthdesk.schemas.email_sequence import (
    HasTags,
    LacksTags,
    MustHaveClicked,
    MustHaveOpened,
    MustNotHaveOpened,
    StepCondition,
)


class EngagementSnapshot(BaseModel):
    """What is known about a subscriber when a step comes due."""
    model_config = ConfigDict(frozen=True)

    opened: bool = False
    clicked: bool = False
    tags: FrozenSet[str] = frozenset()

    @classmethod
    def empty(cls, tags: Iterable[str] = ()) -> "EngagementSnapshot":
        """No previous email (first step): only tags are known."""
        return cls(tags=frozenset(tags))


def condition_holds(condition: StepCondition, snapshot: EngagementSnapshot) -> bool:
    if isinstance(condition, MustHaveOpened):
        return snapshot.opened
    if isinstance(condition, MustHaveClicked):
        return snapshot.clicked
    if isinstance(condition, MustNotHaveOpened):
        return not snapshot.opened
    if isinstance(condition, HasTags):
        return set(condition.tags) <= snapshot.tags
    if isinstance(condition, LacksTags):
        return not (set(condition.tags) & snapshot.tags)
    raise TypeError(f"Unsupported step condition: {condition!r}")


def evaluate(conditions: List[StepCondition], snapshot: EngagementSnapshot) -> bool:
    """True when every condition holds. An empty list always passes."""
    return all(condition_holds(c, snapshot) for c in conditions)

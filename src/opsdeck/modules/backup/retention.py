"""
Retention policy for backup archives.

An archive survives a cleanup pass when it satisfies *either* policy:

* count: it is among the ``keep_count`` most recent archives of its instance;
* age: it was written within the last ``keep_age_days`` days.

Only archives failing both are classified obsolete. Selection is a pure
function over the artifact collection; deleting files is the caller's job.
"""

from __future__ import annotations

import datetime as dt
import math
from collections import defaultdict
from collections.abc import Iterable, Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...core.contracts import BackupArtifact, RetentionDecision

DEFAULT_KEEP_COUNT = 3
DEFAULT_KEEP_AGE_DAYS = 5.0


class InvalidConfiguration(ValueError):
    """Raised when retention parameters are negative or not finite."""


class RetentionPolicy(BaseModel):
    """Validated pair of retention parameters."""

    model_config = ConfigDict(frozen=True)

    keep_count: int = Field(default=DEFAULT_KEEP_COUNT)
    keep_age_days: float = Field(default=DEFAULT_KEEP_AGE_DAYS)

    @field_validator("keep_count")
    @classmethod
    def _non_negative_count(cls, value: int) -> int:
        _check_count(value)
        return value

    @field_validator("keep_age_days")
    @classmethod
    def _non_negative_age(cls, value: float) -> float:
        _check_age(value)
        return value

    @classmethod
    def build(cls, keep_count: int, keep_age_days: float) -> RetentionPolicy:
        """Construct a policy, raising `InvalidConfiguration` instead of a pydantic error."""
        _check_count(keep_count)
        _check_age(keep_age_days)
        return cls(keep_count=keep_count, keep_age_days=keep_age_days)


def _check_count(keep_count: int) -> None:
    if isinstance(keep_count, bool) or not isinstance(keep_count, int):
        raise InvalidConfiguration(f"keep_count must be an integer, got {keep_count!r}")
    if keep_count < 0:
        raise InvalidConfiguration(f"keep_count must be non-negative, got {keep_count}")


def _check_age(keep_age_days: float) -> None:
    if isinstance(keep_age_days, bool) or not isinstance(keep_age_days, int | float):
        raise InvalidConfiguration(f"keep_age_days must be a number, got {keep_age_days!r}")
    if not math.isfinite(keep_age_days) or keep_age_days < 0:
        raise InvalidConfiguration(
            f"keep_age_days must be a non-negative finite number, got {keep_age_days}"
        )


def _newest_first(artifacts: Iterable[BackupArtifact]) -> list[BackupArtifact]:
    unique: dict[Path, BackupArtifact] = {}
    for artifact in artifacts:
        unique.setdefault(artifact.path, artifact)
    # Two stable passes: path ascending breaks timestamp ties deterministically.
    ordered = sorted(unique.values(), key=lambda artifact: str(artifact.path))
    ordered.sort(key=lambda artifact: artifact.last_modified, reverse=True)
    return ordered


def _age_cutoff(now: dt.datetime, keep_age_days: float) -> dt.datetime:
    """Oldest timestamp still inside the age window; saturates at the calendar start."""
    try:
        return now - dt.timedelta(days=keep_age_days)
    except OverflowError:
        return dt.datetime.min.replace(tzinfo=now.tzinfo)


def select(
    artifacts: Iterable[BackupArtifact],
    now: dt.datetime,
    keep_count: int,
    keep_age_days: float,
) -> RetentionDecision:
    """
    Partition one instance group into artifacts to keep and obsolete ones.

    Raises:
        InvalidConfiguration: when ``keep_count`` or ``keep_age_days`` is negative.
    """

    _check_count(keep_count)
    _check_age(keep_age_days)

    ordered = _newest_first(artifacts)
    if not ordered:
        return RetentionDecision()

    by_count = {artifact.path for artifact in ordered[:keep_count]}
    cutoff = _age_cutoff(now, keep_age_days)
    by_age = {artifact.path for artifact in ordered if artifact.last_modified >= cutoff}
    kept = by_count | by_age

    return RetentionDecision(
        keep=tuple(artifact for artifact in ordered if artifact.path in kept),
        obsolete=tuple(artifact for artifact in ordered if artifact.path not in kept),
    )


def select_by_instance(
    artifacts: Iterable[BackupArtifact],
    now: dt.datetime,
    policy: RetentionPolicy,
) -> Mapping[str, RetentionDecision]:
    """Apply `select` independently to every instance group."""

    groups: dict[str, list[BackupArtifact]] = defaultdict(list)
    for artifact in artifacts:
        groups[artifact.instance].append(artifact)
    return {
        instance: select(members, now, policy.keep_count, policy.keep_age_days)
        for instance, members in sorted(groups.items())
    }


__all__ = [
    "DEFAULT_KEEP_AGE_DAYS",
    "DEFAULT_KEEP_COUNT",
    "InvalidConfiguration",
    "RetentionPolicy",
    "select",
    "select_by_instance",
]

"""Rank ladder: tenure arithmetic, earned rank and promotion eligibility."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from config import (
    RANK_ROLE_CORPORAL,
    RANK_ROLE_LIEUTENANT,
    RANK_ROLE_MAJOR,
    RANK_ROLE_SERGEANT,
)

SECONDS_PER_DAY = 86_400


@dataclass(frozen=True)
class RankDefinition:
    name: str
    min_days: int
    role_id: str | None = None


RANK_LADDER: tuple[RankDefinition, ...] = (
    RankDefinition("Private", 0, None),
    RankDefinition("Corporal", 14, RANK_ROLE_CORPORAL),
    RankDefinition("Sergeant", 30, RANK_ROLE_SERGEANT),
    RankDefinition("Lieutenant", 60, RANK_ROLE_LIEUTENANT),
    RankDefinition("Major", 90, RANK_ROLE_MAJOR),
)

ENTRY_RANK = RANK_LADDER[0]
TERMINAL_INDEX = len(RANK_LADDER) - 1


@dataclass(frozen=True)
class RankProjection:
    tenure_days: int
    earned_rank: RankDefinition
    next_rank: RankDefinition | None
    promotion_eligible: bool
    promotion_reason: str | None

    def as_fields(self) -> dict[str, object]:
        return {
            "rank_next": self.next_rank.name if self.next_rank else None,
            "promote_eligible": self.promotion_eligible,
            "promote_reason": self.promotion_reason,
        }


def rank_index(name: str | None) -> int:
    """Ladder position for a rank name; unknown names sit at the entry rank."""
    if not name:
        return 0
    lowered = name.strip().lower()
    for index, rank in enumerate(RANK_LADDER):
        if rank.name.lower() == lowered:
            return index
    return 0


def normalize_rank_name(raw: str | None) -> str:
    return RANK_LADDER[rank_index(raw)].name


def rank_by_name(name: str | None) -> RankDefinition:
    return RANK_LADDER[rank_index(name)]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def days_since(since: datetime, now: datetime) -> int:
    elapsed = (_as_utc(now) - _as_utc(since)).total_seconds()
    return max(0, int(elapsed // SECONDS_PER_DAY))


def effective_tenure_days(
    frozen_days: int | None, counting_since: datetime | None, now: datetime
) -> int:
    frozen = max(0, int(frozen_days or 0))
    if counting_since is None:
        return frozen
    return frozen + days_since(counting_since, now)


def earned_rank(days: int) -> RankDefinition:
    earned = ENTRY_RANK
    for rank in RANK_LADDER:
        if days >= rank.min_days:
            earned = rank
    return earned


def next_rank(current_rank: str | None) -> RankDefinition | None:
    """The rank after the current one, whether or not its threshold is met."""
    index = rank_index(current_rank)
    if index >= TERMINAL_INDEX:
        return None
    return RANK_LADDER[index + 1]


def promotion_eligible(
    status: str, has_tag: bool, current_idx: int, earned_idx: int
) -> bool:
    return (
        status == "active"
        and bool(has_tag)
        and earned_idx > current_idx
        and current_idx < TERMINAL_INDEX
    )


def promotion_reason(days: int, rank: RankDefinition) -> str:
    return f"{days} days in clan, meets {rank.name} threshold ({rank.min_days} days)"


def kept_rank(declared_rank: str | None, days: int) -> RankDefinition:
    """Higher of a declared rank and the earned rank; imports never demote."""
    index = max(rank_index(declared_rank), RANK_LADDER.index(earned_rank(days)))
    return RANK_LADDER[index]


def derive_rank_fields(
    *,
    status: str,
    has_tag: bool,
    frozen_days: int | None,
    counting_since: datetime | None,
    current_rank: str | None,
    now: datetime,
) -> RankProjection:
    days = effective_tenure_days(frozen_days, counting_since, now)
    earned = earned_rank(days)
    current_idx = rank_index(current_rank)
    eligible = promotion_eligible(
        status, has_tag, current_idx, RANK_LADDER.index(earned)
    )
    return RankProjection(
        tenure_days=days,
        earned_rank=earned,
        next_rank=next_rank(current_rank),
        promotion_eligible=eligible,
        promotion_reason=promotion_reason(days, earned) if eligible else None,
    )

"""Match free-text member names against guild directory entries."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable

SCORE_EXACT = 3
SCORE_PREFIX = 2
SCORE_SUBSTRING = 1
SCORE_NONE = 0

RESOLVE_SEARCH_LIMIT = 25

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class GuildIdentityCandidate:
    discord_id: str
    display_name: str
    username: str
    nick: str | None = None
    global_name: str | None = None

    def name_fields(self) -> tuple[str, str, str]:
        return (self.username, self.global_name or "", self.nick or "")


@dataclass(frozen=True)
class Resolution:
    id: str | None
    multiple: bool = False

    @property
    def resolved(self) -> bool:
        return self.id is not None


def normalize(name: str | None) -> str:
    """Lowercase, collapse newlines and whitespace runs, trim."""
    if not name:
        return ""
    return _WHITESPACE_RE.sub(" ", str(name)).strip().lower()


def candidate_from_member(member: dict[str, Any]) -> GuildIdentityCandidate:
    user = member.get("user") or {}
    username = str(user.get("username") or "")
    global_name = user.get("global_name") or None
    return GuildIdentityCandidate(
        discord_id=str(user.get("id", "")),
        display_name=global_name or username,
        username=username,
        nick=member.get("nick") or None,
        global_name=global_name,
    )


def _score_field(query: str, field: str) -> int:
    value = normalize(field)
    if not value:
        return SCORE_NONE
    if value == query:
        return SCORE_EXACT
    if value.startswith(query):
        return SCORE_PREFIX
    if query in value:
        return SCORE_SUBSTRING
    return SCORE_NONE


def score_candidate(query: str, candidate: GuildIdentityCandidate) -> int:
    """Best score across username, global name and guild nickname."""
    normalized = normalize(query)
    if not normalized:
        return SCORE_NONE
    return max(_score_field(normalized, field) for field in candidate.name_fields())


def _scored(
    directory: Iterable[dict[str, Any]], query: str
) -> list[tuple[int, GuildIdentityCandidate]]:
    scored = []
    for member in directory:
        candidate = candidate_from_member(member)
        if not candidate.discord_id:
            continue
        score = score_candidate(query, candidate)
        if score > SCORE_NONE:
            scored.append((score, candidate))
    # sorted() is stable, so equal scores keep directory order
    return sorted(scored, key=lambda item: item[0], reverse=True)


def search_candidates(
    directory: Iterable[dict[str, Any]], query: str, limit: int = 20
) -> list[GuildIdentityCandidate]:
    if not normalize(query):
        return []
    return [candidate for _, candidate in _scored(directory, query)[: max(0, limit)]]


def resolve_single(
    display_name: str, directory: Iterable[dict[str, Any]]
) -> Resolution:
    """
    Resolve a display name to exactly one guild member.

    A unique top-scoring candidate wins when it is an exact match, or when it
    is the only candidate at all. Ties at the top, and fuzzy winners that
    compete with other fuzzy matches, are reported as ambiguous.
    """
    if not normalize(display_name):
        return Resolution(id=None, multiple=False)
    scored = _scored(directory, display_name)[:RESOLVE_SEARCH_LIMIT]
    if not scored:
        return Resolution(id=None, multiple=False)
    top_score, top = scored[0]
    top_count = sum(1 for score, _ in scored if score == top_score)
    if top_count == 1 and (top_score == SCORE_EXACT or len(scored) == 1):
        return Resolution(id=top.discord_id, multiple=False)
    return Resolution(id=None, multiple=True)


def has_clan_tag(member: dict[str, Any], marker: str) -> bool:
    """True if the marker appears in any of the member's name fields."""
    if not marker:
        return False
    user = member.get("user") or {}
    names = [user.get("username"), user.get("global_name"), member.get("nick")]
    return any(marker in name for name in names if name)


def find_member(
    directory: Iterable[dict[str, Any]], discord_id: str
) -> dict[str, Any] | None:
    for member in directory:
        if str((member.get("user") or {}).get("id", "")) == discord_id:
            return member
    return None

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from config import settings
from db.models import Challenge, ChallengeUserStats
from services.store import ChallengeStore


@dataclass(frozen=True)
class CachedLeaderboard:
    result: dict[str, Any]
    fetched_at: float


class LeaderboardCache:
    """Leaderboard results keyed by query (challenge, team filter) with a TTL."""

    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.time):
        self.ttl_seconds = float(settings.LEADERBOARD_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds)
        self._clock = clock
        self._entries: dict[tuple[int, int | None], CachedLeaderboard] = {}
        self._lock = threading.Lock()

    def get(self, challenge_id: int, team_filter: int | None = None) -> CachedLeaderboard | None:
        key = (int(challenge_id), team_filter)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.fetched_at >= self.ttl_seconds:
                self._entries.pop(key, None)
                return None
            return entry

    def put(self, challenge_id: int, team_filter: int | None, result: dict[str, Any]) -> CachedLeaderboard:
        entry = CachedLeaderboard(result=result, fetched_at=self._clock())
        with self._lock:
            self._entries[(int(challenge_id), team_filter)] = entry
        return entry

    def invalidate(self, challenge_id: int | None = None) -> None:
        with self._lock:
            if challenge_id is None:
                self._entries.clear()
                return
            for key in [key for key in self._entries if key[0] == int(challenge_id)]:
                self._entries.pop(key, None)


def _rank_key(field: str) -> Callable[[dict[str, Any]], tuple]:
    # Higher value first; on a tie the earlier first achievement wins, unknown last.
    def _key(entry: dict[str, Any]) -> tuple:
        achieved = entry.get("first_achieved_at")
        return (-int(entry.get(field) or 0), achieved is None, achieved or datetime.max)

    return _key


def _entry(row: ChallengeUserStats, team_names: dict[int, str]) -> dict[str, Any]:
    return {
        "user_id": row.user_id,
        "display_name": row.display_name or "",
        "team_id": row.team_id,
        "team_name": team_names.get(row.team_id) if row.team_id is not None else None,
        "total_value": int(row.total_value or 0),
        "best_value": int(row.best_value or 0),
        "first_achieved_at": row.first_achieved_at,
    }


def _serialize(entry: dict[str, Any]) -> dict[str, Any]:
    achieved = entry.get("first_achieved_at")
    return {**entry, "first_achieved_at": achieved.isoformat() if achieved else None}


def build_leaderboard(
    store: ChallengeStore,
    challenge: Challenge,
    team_filter: int | None = None,
) -> dict[str, Any]:
    team_names = {team.id: team.name for team in store.list_teams(challenge.id)}
    entries = [_entry(row, team_names) for row in store.list_challenge_stats(challenge.id)]
    filtered = entries if team_filter is None else [e for e in entries if e["team_id"] == team_filter]

    top_total = sorted(filtered, key=_rank_key("total_value"))[: settings.LEADERBOARD_TOP_TOTAL]
    top_best = sorted(filtered, key=_rank_key("best_value"))[: settings.LEADERBOARD_TOP_BEST]

    standings: dict[int, dict[str, Any]] = {}
    for entry in entries:
        team_id = entry["team_id"]
        if team_id is None:
            continue
        bucket = standings.setdefault(
            team_id,
            {"team_id": team_id, "team_name": team_names.get(team_id), "total_value": 0, "member_count": 0},
        )
        bucket["total_value"] += entry["total_value"]
        bucket["member_count"] += 1
    team_standings = sorted(standings.values(), key=lambda row: (-row["total_value"], row["team_name"] or ""))

    return {
        "challenge_id": challenge.id,
        "movement_type": challenge.challenge_type,
        "team_filter": team_filter,
        "top_total": [_serialize(entry) for entry in top_total],
        "top_best": [_serialize(entry) for entry in top_best],
        "team_standings": team_standings,
    }


def get_leaderboard(
    cache: LeaderboardCache,
    store: ChallengeStore,
    challenge: Challenge,
    *,
    team_filter: int | None = None,
    refresh: bool = False,
) -> CachedLeaderboard:
    if refresh:
        cache.invalidate(challenge.id)
    else:
        cached = cache.get(challenge.id, team_filter)
        if cached is not None:
            return cached
    return cache.put(challenge.id, team_filter, build_leaderboard(store, challenge, team_filter))

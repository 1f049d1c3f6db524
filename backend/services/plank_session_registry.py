from __future__ import annotations

import threading
import time
from datetime import date
from typing import Callable

from db.models import Challenge, Enrollment
from services.attempt_session import AttemptSession, TimerRules
from services.enrollment_service import ensure_can_start
from services.errors import InvalidTransitionError
from services.identity import Identity
from services.store import ChallengeStore


class PlankSessionRegistry:
    """Live plank sessions (one per user) and the do-over count per enrollment day.

    The do-over count outlives a single session: a redo bumps it, finishing the
    day clears it, and cancelling puts back the value the session started with.
    """

    def __init__(
        self,
        *,
        rules: TimerRules | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_day_recorded: Callable[[int], None] | None = None,
    ):
        self._rules = rules
        self._clock = clock
        self._on_day_recorded = on_day_recorded
        self._sessions: dict[int, AttemptSession] = {}
        self._attempt_numbers: dict[tuple[int, int], int] = {}
        self._lock = threading.RLock()

    def attempt_number_for(self, enrollment_id: int, day: int) -> int:
        with self._lock:
            return self._attempt_numbers.get((int(enrollment_id), int(day)), 1)

    def start(
        self,
        store: ChallengeStore,
        *,
        enrollment: Enrollment,
        challenge: Challenge,
        identity: Identity,
        today: date | None = None,
    ) -> AttemptSession:
        with self._lock:
            existing = self._sessions.get(identity.user_id)
            if existing is not None and not existing.is_finished:
                if existing.enrollment_id == enrollment.id and existing.day == int(enrollment.current_day):
                    existing.rebind(store, enrollment=enrollment, challenge=challenge)
                    return existing
                raise InvalidTransitionError("Finish or cancel your current plank first.")

            if (challenge.challenge_type or "plank") != "plank":
                raise InvalidTransitionError("Only plank challenges use the timer.")
            ensure_can_start(store, enrollment, challenge, today)

            key = (int(enrollment.id), int(enrollment.current_day))
            challenge_id = int(challenge.id)
            starting_number = self._attempt_numbers.get(key, 1)
            holder: list[AttemptSession] = []

            def _completed(is_redo: bool) -> None:
                with self._lock:
                    if is_redo:
                        self._attempt_numbers[key] = holder[0].attempt_number
                    else:
                        self._attempt_numbers.pop(key, None)
                if not is_redo and self._on_day_recorded:
                    self._on_day_recorded(challenge_id)

            def _cancelled() -> None:
                with self._lock:
                    if starting_number > 1:
                        self._attempt_numbers[key] = starting_number
                    else:
                        self._attempt_numbers.pop(key, None)

            session = AttemptSession(
                store,
                enrollment=enrollment,
                challenge=challenge,
                identity=identity,
                attempt_number=starting_number,
                rules=self._rules,
                clock=self._clock,
                on_complete=_completed,
                on_cancel=_cancelled,
                today=today,
            )
            holder.append(session)
            self._sessions[identity.user_id] = session
            return session

    def get(self, user_id: int, store: ChallengeStore | None = None) -> AttemptSession | None:
        """The user's latest session, reattached to ``store`` when one is given."""
        with self._lock:
            session = self._sessions.get(int(user_id))
            if session is None or store is None:
                return session
            enrollment = store.find_enrollment_by_id(session.enrollment_id)
            challenge = store.find_challenge(session.challenge_id)
            if enrollment is None or challenge is None:
                # The challenge was reset or deleted underneath the session.
                self._sessions.pop(int(user_id), None)
                return None
            session.rebind(store, enrollment=enrollment, challenge=challenge)
            return session

    def discard(self, user_id: int) -> None:
        with self._lock:
            self._sessions.pop(int(user_id), None)

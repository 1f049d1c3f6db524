"""Timed plank attempt state machine.

Stages::

    countdown -> active <-> paused
    active -> stillGoingPrompt -> active | keepOrRedo
    active -> autoStopping -> keepOrRedo
    keepOrRedo -> complete | failed | countdown (do-over)
    paused -> failed (recovery budget spent)

The session is poll driven. ``tick()`` recomputes everything from fixed
instants of a monotonic clock, so a late tick (suspended tab, slow client)
applies each scheduled transition at the instant it was due rather than when
it was noticed. Every action ticks first.

A day's outcome is persisted exactly once per session: attempt record, then
stats aggregation (successful days only), then the enrollment roll-forward.
If a write fails the session stays where it was and the error propagates.
From then on the clock no longer drives it: every tick or action retries the
same outcome, and steps that already landed are not repeated.
"""
from __future__ import annotations

import logging
import math
import random
import time
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable

from config import settings
from db.models import Challenge, Enrollment
from services.enrollment_service import record_day_outcome
from services.errors import InvalidTransitionError
from services.identity import Identity
from services.store import ChallengeStore
from utils.datetime_utils import format_seconds, target_for_day

logger = logging.getLogger(__name__)

COUNTDOWN = "countdown"
ACTIVE = "active"
PAUSED = "paused"
AUTO_STOPPING = "autoStopping"
STILL_GOING_PROMPT = "stillGoingPrompt"
KEEP_OR_REDO = "keepOrRedo"
COMPLETE = "complete"
FAILED = "failed"
CANCELLED = "cancelled"

TERMINAL_STAGES = {COMPLETE, FAILED}
COUNTDOWN_LABELS = {3: "Ready", 2: "Set", 1: "Go!"}

RECOVERY_TIPS = [
    "Take some deep breaths",
    "Stretch those muscles",
    "Shake it out and reset",
    "Stay strong, you've got this",
]
HIGH_CELEBRATIONS = [
    "Crushing it!",
    "You're on fire!",
    "Beast mode!",
    "Incredible!",
    "Unstoppable!",
    "Next level!",
    "Keep dominating!",
]
STANDARD_CELEBRATIONS = [
    "Goal achieved! Well done!",
    "Target reached! Nice job!",
    "You did it! Goal accomplished!",
    "Success! You met today's goal!",
]


@dataclass(frozen=True)
class TimerRules:
    countdown_steps: int = 3
    countdown_step_seconds: float = 1.0
    still_going_first_seconds: int = 300
    still_going_interval_seconds: int = 120
    still_going_window_seconds: float = 20.0
    recovery_limit_seconds: float = 60.0
    auto_stop_delay_seconds: float = 0.5
    keep_or_redo_timeout_seconds: float = 20.0
    max_attempts: int = 3
    celebration_high_threshold: int = 15

    @classmethod
    def from_settings(cls) -> "TimerRules":
        return cls(
            countdown_steps=settings.COUNTDOWN_STEPS,
            countdown_step_seconds=settings.COUNTDOWN_STEP_SECONDS,
            still_going_first_seconds=settings.STILL_GOING_FIRST_SECONDS,
            still_going_interval_seconds=settings.STILL_GOING_INTERVAL_SECONDS,
            still_going_window_seconds=settings.STILL_GOING_WINDOW_SECONDS,
            recovery_limit_seconds=settings.RECOVERY_LIMIT_SECONDS,
            auto_stop_delay_seconds=settings.AUTO_STOP_DELAY_SECONDS,
            keep_or_redo_timeout_seconds=settings.KEEP_OR_REDO_TIMEOUT_SECONDS,
            max_attempts=settings.MAX_ATTEMPTS_PER_DAY,
            celebration_high_threshold=settings.CELEBRATION_HIGH_THRESHOLD_SECONDS,
        )


def celebration_message(actual_seconds: int, target_seconds: int, *, high_threshold: int = 15) -> str:
    over = int(actual_seconds) - int(target_seconds)
    if over >= high_threshold:
        return f"+{over} seconds over goal! {random.choice(HIGH_CELEBRATIONS)}"
    return random.choice(STANDARD_CELEBRATIONS)


class AttemptSession:
    def __init__(
        self,
        store: ChallengeStore,
        *,
        enrollment: Enrollment,
        challenge: Challenge,
        identity: Identity,
        attempt_number: int = 1,
        rules: TimerRules | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_complete: Callable[[bool], None] | None = None,
        on_cancel: Callable[[], None] | None = None,
        today: date | None = None,
    ):
        self.session_id = uuid.uuid4().hex
        self.store = store
        self.enrollment = enrollment
        self.challenge = challenge
        self.identity = identity
        self.rules = rules or TimerRules.from_settings()
        self._clock = clock
        self._on_complete = on_complete
        self._on_cancel = on_cancel
        self._today = today

        self.enrollment_id = int(enrollment.id)
        self.challenge_id = int(challenge.id)
        self.day = int(enrollment.current_day)
        self.number_of_days = int(challenge.number_of_days)
        self.target_seconds = target_for_day(challenge.starting_value, challenge.increment_per_day, self.day)
        self.starting_attempt_number = max(1, min(int(attempt_number), self.rules.max_attempts))
        self.attempt_number = self.starting_attempt_number

        self.final_value: int | None = None
        self.final_success: bool | None = None
        self.celebration: str | None = None
        self._pending_outcome: tuple[int, bool] | None = None
        self._completed_steps: set[str] = set()

        self._reset_run(self._clock())

    def rebind(self, store: ChallengeStore, *, enrollment: Enrollment, challenge: Challenge) -> None:
        """Attach the session to the store and rows of the current request."""
        if int(enrollment.id) != self.enrollment_id or int(challenge.id) != self.challenge_id:
            raise ValueError("Session can only be rebound to its own enrollment and challenge")
        self.store = store
        self.enrollment = enrollment
        self.challenge = challenge

    # State

    def _reset_run(self, now: float) -> None:
        self.stage = COUNTDOWN
        self.has_paused = False
        self.recovery_used = 0.0
        self.recovery_tip = ""
        self._countdown_started_at = now
        self._active_origin: float | None = None
        self._active_since: float | None = None
        self._resume_elapsed = 0.0
        self._pause_started_at: float | None = None
        self._frozen: float | None = None
        self._prompt_started_at: float | None = None
        self._next_prompt_at = float(self.rules.still_going_first_seconds)
        self._auto_stop_started_at: float | None = None
        self._keep_started_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def is_finished(self) -> bool:
        return self.stage in TERMINAL_STAGES or self.stage == CANCELLED

    def elapsed(self, now: float | None = None) -> float:
        now = self._clock() if now is None else now
        if self.stage == ACTIVE and self._active_origin is not None:
            return max(now - self._active_origin, 0.0)
        if self.stage in (COUNTDOWN, PAUSED):
            return self._resume_elapsed
        if self.stage in (STILL_GOING_PROMPT, AUTO_STOPPING, KEEP_OR_REDO):
            return float(self._frozen or 0.0)
        if self.stage in TERMINAL_STAGES:
            return float(self.final_value or 0)
        return 0.0

    def recovery_remaining(self, now: float | None = None) -> float:
        now = self._clock() if now is None else now
        used = self.recovery_used
        if self.stage == PAUSED and self._pause_started_at is not None:
            used += now - self._pause_started_at
        return max(self.rules.recovery_limit_seconds - used, 0.0)

    # Time-driven transitions

    def tick(self) -> str:
        if self.is_finished:
            return self.stage
        if self._pending_outcome is not None:
            # The outcome is chosen; the clock no longer moves the session, only the write is retried.
            self._persist()
            return self.stage
        now = self._clock()
        while self._advance(now):
            pass
        return self.stage

    def _advance(self, now: float) -> bool:
        if self.stage == COUNTDOWN:
            ends_at = self._countdown_started_at + self.rules.countdown_steps * self.rules.countdown_step_seconds
            if now < ends_at:
                return False
            # Elapsed carries on from the pause instant; countdown time is neither gained nor lost.
            self._active_origin = ends_at - self._resume_elapsed
            self._active_since = ends_at
            self.stage = ACTIVE
            return True

        if self.stage == ACTIVE:
            elapsed = now - self._active_origin
            if elapsed >= self._next_prompt_at and (not self.has_paused or self._next_prompt_at <= self.target_seconds):
                self._frozen = self._next_prompt_at
                self._prompt_started_at = self._active_origin + self._next_prompt_at
                self._next_prompt_at += self.rules.still_going_interval_seconds
                self.stage = STILL_GOING_PROMPT
                return True
            if self.has_paused and elapsed >= self.target_seconds:
                self._frozen = float(self.target_seconds)
                # A target passed while the prompt was open is only noticed once it is acknowledged.
                self._auto_stop_started_at = max(self._active_origin + self.target_seconds, self._active_since or 0.0)
                self.stage = AUTO_STOPPING
                return True
            return False

        if self.stage == STILL_GOING_PROMPT:
            expires_at = self._prompt_started_at + self.rules.still_going_window_seconds
            if now < expires_at:
                return False
            # Unanswered: the frozen time stands and the prompt time is not credited.
            self._keep_started_at = expires_at
            self._prompt_started_at = None
            self.stage = KEEP_OR_REDO
            return True

        if self.stage == AUTO_STOPPING:
            stops_at = self._auto_stop_started_at + self.rules.auto_stop_delay_seconds
            if now < stops_at:
                return False
            self._frozen = float(self.target_seconds)
            self._keep_started_at = stops_at
            self.stage = KEEP_OR_REDO
            return True

        if self.stage == PAUSED:
            if self.recovery_used + (now - self._pause_started_at) < self.rules.recovery_limit_seconds:
                return False
            self.recovery_used = self.rules.recovery_limit_seconds
            logger.info("Recovery budget spent for enrollment %s day %s", self.enrollment_id, self.day)
            self._finish(int(math.floor(self._resume_elapsed)), False)
            return False

        if self.stage == KEEP_OR_REDO:
            if now < self._keep_started_at + self.rules.keep_or_redo_timeout_seconds:
                return False
            # Timing out is the same as choosing a do-over.
            self._redo(now)
            return not self.is_terminal

        return False

    # Actions

    def _require(self, *stages: str) -> None:
        if self.is_terminal:
            raise InvalidTransitionError("This attempt has already been recorded.")
        if self.stage == CANCELLED:
            raise InvalidTransitionError("This attempt was cancelled.")
        if self.stage not in stages:
            raise InvalidTransitionError(f"Cannot do that while the timer is in '{self.stage}'.")

    def pause(self) -> None:
        self.tick()
        self._require(ACTIVE)
        now = self._clock()
        elapsed = self.elapsed(now)
        if not self.has_paused and elapsed >= self.target_seconds:
            raise InvalidTransitionError("You've reached today's goal - tap Done when you finish.")
        self.has_paused = True
        self._resume_elapsed = elapsed
        self._pause_started_at = now
        self._active_origin = None
        self.recovery_tip = random.choice(RECOVERY_TIPS)
        self.stage = PAUSED

    def resume(self) -> None:
        self.tick()
        self._require(PAUSED)
        now = self._clock()
        self.recovery_used += now - self._pause_started_at
        self._pause_started_at = None
        self.recovery_tip = ""
        self._countdown_started_at = now
        self.stage = COUNTDOWN

    def done(self) -> None:
        """Manual stop for a never-paused session at or past its goal."""
        self.tick()
        self._require(ACTIVE)
        now = self._clock()
        elapsed = self.elapsed(now)
        if self.has_paused or elapsed < self.target_seconds:
            raise InvalidTransitionError("Done is only available after reaching the goal without pausing.")
        self._frozen = elapsed
        self._active_origin = None
        self._keep_started_at = now
        self.stage = KEEP_OR_REDO

    def acknowledge_still_going(self) -> None:
        self.tick()
        self._require(STILL_GOING_PROMPT)
        now = self._clock()
        # The origin is untouched, so the time spent on the prompt counts as plank time.
        self._frozen = None
        self._prompt_started_at = None
        self._active_since = now
        self.stage = ACTIVE

    def keep(self) -> None:
        was_pending = self._pending_outcome is not None and not self.is_finished
        self.tick()
        if was_pending and self.is_terminal:
            return
        self._require(KEEP_OR_REDO)
        actual = int(math.floor(self._frozen or 0.0))
        self._finish(actual, actual >= self.target_seconds)

    def redo(self) -> None:
        was_pending = self._pending_outcome is not None and not self.is_finished
        self.tick()
        if was_pending and self.is_terminal:
            return
        self._require(KEEP_OR_REDO)
        self._redo(self._clock())

    def cancel(self) -> None:
        self.tick()
        self._require(COUNTDOWN, ACTIVE, PAUSED, AUTO_STOPPING, STILL_GOING_PROMPT, KEEP_OR_REDO)
        self.stage = CANCELLED
        self.attempt_number = self.starting_attempt_number
        logger.info("Plank session %s cancelled for enrollment %s day %s", self.session_id, self.enrollment_id, self.day)
        if self._on_cancel:
            self._on_cancel()

    # Outcomes

    def _redo(self, now: float) -> None:
        if self.attempt_number >= self.rules.max_attempts:
            # No do-overs left: the day is scored as a failure at the frozen time.
            self._finish(int(math.floor(self._frozen or 0.0)), False)
            return
        self._pending_outcome = None
        self.attempt_number += 1
        logger.info(
            "Do-over for enrollment %s day %s, attempt %s of %s",
            self.enrollment_id,
            self.day,
            self.attempt_number,
            self.rules.max_attempts,
        )
        self._reset_run(now)
        if self._on_complete:
            self._on_complete(True)

    def _finish(self, actual: int, success: bool) -> None:
        self._pending_outcome = (int(actual), bool(success))
        self._persist()

    def _persist(self) -> None:
        actual, success = self._pending_outcome
        record_day_outcome(
            self.store,
            enrollment=self.enrollment,
            challenge=self.challenge,
            identity=self.identity,
            day=self.day,
            target_value=self.target_seconds,
            actual_value=actual,
            success=success,
            completed_steps=self._completed_steps,
            today=self._today,
        )
        self.final_value = actual
        self.final_success = success
        self.stage = COMPLETE if success else FAILED
        if success:
            self.celebration = celebration_message(
                actual, self.target_seconds, high_threshold=self.rules.celebration_high_threshold
            )
        logger.info(
            "Plank session %s finished %s: %ss of %ss (attempt %s)",
            self.session_id,
            self.stage,
            actual,
            self.target_seconds,
            self.attempt_number,
        )
        if self._on_complete:
            self._on_complete(False)

    # Display

    def available_actions(self, now: float | None = None) -> list[str]:
        now = self._clock() if now is None else now
        if self.is_finished:
            return []
        if self._pending_outcome is not None:
            return ["retry"]
        actions: list[str] = []
        if self.stage == ACTIVE:
            elapsed = self.elapsed(now)
            if not self.has_paused and elapsed >= self.target_seconds:
                actions.append("done")
            if self.has_paused or elapsed < self.target_seconds:
                actions.append("pause")
        elif self.stage == PAUSED:
            actions.append("resume")
        elif self.stage == STILL_GOING_PROMPT:
            actions.append("still_going")
        elif self.stage == KEEP_OR_REDO:
            actions.append("keep")
            actions.append("redo")
        actions.append("cancel")
        return actions

    def snapshot(self) -> dict[str, Any]:
        now = self._clock()
        elapsed = int(math.floor(self.elapsed(now)))
        countdown_remaining = None
        if self.stage == COUNTDOWN:
            passed = int((now - self._countdown_started_at) // self.rules.countdown_step_seconds)
            countdown_remaining = max(self.rules.countdown_steps - passed, 0)
        prompt_remaining = None
        if self.stage == STILL_GOING_PROMPT and self._prompt_started_at is not None:
            prompt_remaining = max(
                int(math.ceil(self._prompt_started_at + self.rules.still_going_window_seconds - now)), 0
            )
        keep_remaining = None
        if self.stage == KEEP_OR_REDO and self._keep_started_at is not None:
            keep_remaining = max(
                int(math.ceil(self._keep_started_at + self.rules.keep_or_redo_timeout_seconds - now)), 0
            )
        return {
            "session_id": self.session_id,
            "enrollment_id": self.enrollment_id,
            "challenge_id": self.challenge_id,
            "day": self.day,
            "is_final_day": self.day == self.number_of_days,
            "stage": self.stage,
            "target_seconds": self.target_seconds,
            "elapsed_seconds": elapsed,
            "elapsed_display": format_seconds(elapsed),
            "countdown": countdown_remaining,
            "countdown_label": COUNTDOWN_LABELS.get(countdown_remaining or 0, ""),
            "has_paused": self.has_paused,
            "recovery_remaining_seconds": int(math.ceil(self.recovery_remaining(now))),
            "recovery_tip": self.recovery_tip or None,
            "still_going_seconds_remaining": prompt_remaining,
            "keep_or_redo_seconds_remaining": keep_remaining,
            "attempt_number": self.attempt_number,
            "do_overs_remaining": max(self.rules.max_attempts - self.attempt_number, 0),
            "final_value": self.final_value,
            "success": self.final_success,
            "celebration": self.celebration,
            "available_actions": self.available_actions(now),
        }

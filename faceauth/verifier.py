"""
Verification Module

State machine for the enrollment and login flows. Combines the acquisition
session, the similarity scorer and the enrollment store, and applies the
accept policy and soft lockout.
"""

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .acquisition import AcquisitionSession
from .camera import FrameSource
from .enrollment_store import EnrollmentStore
from .errors import (
    DuplicateUserError,
    FaceAuthError,
    IncompleteCaptureError,
    InvalidTransitionError,
    InvalidUsernameError,
    LockedOutError,
    UnknownUserError,
)
from .notifications import LoggingNotifier, Notifier
from .similarity import SimilarityScorer
from .types import EnrollmentRecord, VerificationAttempt

logger = logging.getLogger(__name__)


class VerificationState(Enum):
    FORM = 'form'
    CAPTURING = 'capturing'
    SCORING = 'scoring'
    DECIDED_ACCEPT = 'accepted'
    DECIDED_REJECT = 'rejected'
    ENROLLED = 'enrolled'


# States from which a new login or enrollment may start
START_STATES = (
    VerificationState.FORM,
    VerificationState.DECIDED_REJECT,
    VerificationState.ENROLLED,
)


class LockoutCounter:
    """Consecutive failed attempts for the username currently being verified."""

    def __init__(self, max_failures: int = 3):
        self.max_failures = max_failures
        self.username: Optional[str] = None
        self.failures = 0

    def track(self, username: str):
        """Switch to a username; a different one starts a fresh count."""
        if username != self.username:
            self.username = username
            self.failures = 0

    def record_failure(self) -> int:
        self.failures += 1
        return self.failures

    def reset(self):
        self.failures = 0

    @property
    def is_locked(self) -> bool:
        return self.failures >= self.max_failures

    @property
    def remaining(self) -> int:
        return max(0, self.max_failures - self.failures)


class FaceVerifier:
    """Drives enrollment and login: form, capture, scoring, decision."""

    def __init__(self, config: Dict[str, Any],
                 acquisition: AcquisitionSession,
                 scorer: SimilarityScorer,
                 store: EnrollmentStore,
                 frame_source: FrameSource,
                 notifier: Optional[Notifier] = None):
        """
        Initialize the verifier.

        Args:
            config: Configuration dictionary with verification settings
            acquisition: Session used to collect snapshots
            scorer: Similarity scorer for captured vs enrolled sets
            store: Enrollment record store
            frame_source: Live frame provider
            notifier: Sink for user-facing messages
        """
        self.config = config
        self.verification_config = config.get('verification', {})
        self.match_threshold = self.verification_config.get('match_threshold', 0.92)
        self.min_floor = self.verification_config.get('min_floor', 0.85)
        self.max_failed_attempts = int(self.verification_config.get('max_failed_attempts', 3))

        self.acquisition = acquisition
        self.required_count = acquisition.required_count
        self.scorer = scorer
        self.store = store
        self.frame_source = frame_source
        self.notifier = notifier or LoggingNotifier()

        self.state = VerificationState.FORM
        self.lockout = LockoutCounter(self.max_failed_attempts)
        self.username: Optional[str] = None
        self.record: Optional[EnrollmentRecord] = None
        self.attempt: Optional[VerificationAttempt] = None
        self.last_attempt: Optional[VerificationAttempt] = None

        self.stats = self._new_stats()

        logger.info("Face verifier initialized successfully")

    @staticmethod
    def _new_stats() -> Dict[str, Any]:
        return {
            'login_attempts': 0,
            'accepted': 0,
            'rejected': 0,
            'lockouts': 0,
            'enrollments': 0,
            'errors': 0,
            'session_start': datetime.now().isoformat()
        }

    def _require_state(self, *states: VerificationState):
        if self.state not in states:
            expected = ', '.join(state.value for state in states)
            raise InvalidTransitionError(
                f"Cannot do that while {self.state.value} (expected {expected})"
            )

    def _check_lockout(self):
        if self.lockout.is_locked:
            self.stats['lockouts'] += 1
            raise LockedOutError(self.lockout.username, self.lockout.failures)

    @staticmethod
    def _clean_username(username: str) -> str:
        username = (username or '').strip()
        if not username:
            raise InvalidUsernameError("Username is required")
        return username

    @contextmanager
    def _flow_step(self):
        """Report flow errors, return to the form, and re-raise."""
        try:
            yield
        except asyncio.CancelledError:
            logger.info("Flow cancelled, returning to form")
            self._back_to_form()
            raise
        except InvalidTransitionError:
            raise
        except FaceAuthError as e:
            self.stats['errors'] += 1
            logger.error(f"Flow error in state {self.state.value}: {e}")
            self.notifier.error(str(e))
            self._back_to_form()
            raise

    def _back_to_form(self):
        self.state = VerificationState.FORM
        self.attempt = None

    def begin_login(self, username: str) -> EnrollmentRecord:
        """
        Form -> Capturing.

        Raises:
            UnknownUserError: If the username is not enrolled
            LockedOutError: If the username has used up its attempts
        """
        with self._flow_step():
            self._require_state(*START_STATES)
            username = self._clean_username(username)
            self.lockout.track(username)

            record = self.store.get(username)
            if record is None:
                raise UnknownUserError(username)
            self._check_lockout()

            self.username = username
            self.record = record
            self.attempt = None
            self.state = VerificationState.CAPTURING
            logger.info(f"Starting verification for {username}")
            return record

    async def capture(self) -> VerificationAttempt:
        """Capturing -> Scoring: collect a fresh set of snapshots."""
        self._require_state(VerificationState.CAPTURING)
        with self._flow_step():
            self._check_lockout()
            snapshots = await self.acquisition.acquire(self.username, self.frame_source)

            if len(snapshots) != self.required_count:
                raise IncompleteCaptureError(self.required_count, len(snapshots))

            self.attempt = VerificationAttempt(username=self.username, snapshots=tuple(snapshots))
            self.state = VerificationState.SCORING
            return self.attempt

    async def decide(self) -> VerificationAttempt:
        """Scoring -> Decided: score the captured set and apply the accept policy."""
        self._require_state(VerificationState.SCORING)
        with self._flow_step():
            self._check_lockout()
            attempt = self.attempt
            if len(attempt.snapshots) != self.required_count:
                raise IncompleteCaptureError(self.required_count, len(attempt.snapshots))

            scores = await asyncio.to_thread(
                self.scorer.aggregate, attempt.snapshots, self.record.snapshots
            )
            attempt.scores = scores.per_snapshot
            attempt.mean = scores.mean
            attempt.min = scores.min
            attempt.accepted = self.is_accepted(scores.mean, scores.min)

            self.stats['login_attempts'] += 1
            logger.info(
                f"Face verification complete for {attempt.username}: "
                f"mean {scores.mean:.3f}, min {scores.min:.3f} -> {attempt.outcome}"
            )

            if attempt.accepted:
                self._accept(attempt)
            else:
                self._reject(attempt)

            self.last_attempt = attempt
            self.attempt = None
            return attempt

    def is_accepted(self, mean: float, minimum: float) -> bool:
        """Both the mean threshold and the per-snapshot floor must hold."""
        return mean >= self.match_threshold and minimum >= self.min_floor

    def _accept(self, attempt: VerificationAttempt):
        self.store.set_current_user(attempt.username)
        self.lockout.reset()
        self.stats['accepted'] += 1
        self.state = VerificationState.DECIDED_ACCEPT
        self.notifier.success('Face verification successful!')

    def _reject(self, attempt: VerificationAttempt):
        failures = self.lockout.record_failure()
        self.stats['rejected'] += 1
        self.state = VerificationState.DECIDED_REJECT

        if self.lockout.is_locked:
            logger.warning(f"{attempt.username} locked out after {failures} failed attempts")
            self.notifier.error(
                'Too many failed attempts. Re-enter your username to try again.'
            )
        else:
            self.notifier.error(
                f'Face verification failed. Please try again '
                f'({self.lockout.remaining} attempts left).'
            )

    async def login(self, username: str) -> VerificationAttempt:
        """Run the whole login flow for a username."""
        self.begin_login(username)
        await self.capture()
        return await self.decide()

    async def enroll(self, username: str, replace: bool = False) -> EnrollmentRecord:
        """
        Capture a reference set and store it as the user's enrollment.

        Args:
            username: Name to enroll under
            replace: Replace an existing enrollment instead of failing

        Raises:
            DuplicateUserError: If the username exists and replace is False
        """
        with self._flow_step():
            self._require_state(*START_STATES)
            username = self._clean_username(username)
            if not replace and self.store.exists(username):
                raise DuplicateUserError(username)

            self.username = username
            self.state = VerificationState.CAPTURING
            snapshots = await self.acquisition.acquire(username, self.frame_source)

            if len(snapshots) != self.required_count:
                raise IncompleteCaptureError(self.required_count, len(snapshots))

            record = EnrollmentRecord(username=username, snapshots=tuple(snapshots))
            if replace:
                self.store.save(record)
            else:
                self.store.create(record)

            self.stats['enrollments'] += 1
            self.state = VerificationState.ENROLLED
            self.notifier.success('Registration successful!')
            return record

    def reset(self):
        """Return to the form, dropping any in-flight attempt."""
        self._back_to_form()
        self.username = None
        self.record = None

    def reset_lockout(self):
        self.lockout.reset()

    def logout(self):
        self.store.clear_current_user()
        self.reset()
        self.notifier.success('Logged out successfully')

    def current_user(self) -> Optional[str]:
        return self.store.get_current_user()

    def get_statistics(self) -> Dict[str, Any]:
        """Get verifier statistics."""
        attempts = self.stats['login_attempts']
        return {
            **self.stats,
            **self.store.get_statistics(),
            'state': self.state.value,
            'failed_attempts': self.lockout.failures,
            'acceptance_rate': self.stats['accepted'] / max(1, attempts)
        }

    def reset_statistics(self):
        self.stats = self._new_stats()

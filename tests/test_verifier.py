"""
Unit tests for the verification state machine.
"""

import asyncio
import os
import shutil
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from faceauth.acquisition import AcquisitionSession
from faceauth.camera import StaticFrameSource
from faceauth.capture import CaptureController
from faceauth.enrollment_store import EnrollmentStore
from faceauth.errors import (
    AcquisitionAbandonedError,
    CameraUnavailable,
    DuplicateUserError,
    IncompleteCaptureError,
    InvalidTransitionError,
    InvalidUsernameError,
    LockedOutError,
    StorageError,
    UnknownUserError,
)
from faceauth.notifications import ERROR, SUCCESS, RecordingNotifier
from faceauth.similarity import PixelCosineScorer
from faceauth.verifier import FaceVerifier, LockoutCounter, VerificationState

from fakes import FixedScoreScorer, ScriptedDetector, make_config, make_frame


class VerifierTestCase(unittest.TestCase):
    """Builds a verifier over scripted components."""

    def setUp(self):
        self.config = make_config()
        self.frame_source = StaticFrameSource([make_frame(seed=3)])
        self.store = EnrollmentStore(self.config)
        self.notifier = RecordingNotifier()

    def build(self, scorer=None, detector=None):
        detector = detector or ScriptedDetector()
        asyncio.run(detector.init())
        capture = CaptureController(detector, self.config)
        acquisition = AcquisitionSession(capture, self.config, self.notifier)
        return FaceVerifier(
            self.config,
            acquisition=acquisition,
            scorer=scorer or PixelCosineScorer(self.config),
            store=self.store,
            frame_source=self.frame_source,
            notifier=self.notifier
        )

    def enroll(self, username):
        return asyncio.run(self.build().enroll(username))


class TestDecisionPolicy(VerifierTestCase):

    def login_with_scores(self, scores):
        self.enroll('alice')
        verifier = self.build(scorer=FixedScoreScorer(scores))
        return verifier, asyncio.run(verifier.login('alice'))

    def test_high_mean_with_one_bad_capture_rejects(self):
        verifier, attempt = self.login_with_scores([0.95] * 9 + [0.80])
        self.assertAlmostEqual(attempt.mean, 0.935)
        self.assertAlmostEqual(attempt.min, 0.80)
        self.assertFalse(attempt.accepted)
        self.assertEqual(verifier.state, VerificationState.DECIDED_REJECT)

    def test_mean_below_threshold_rejects(self):
        verifier, attempt = self.login_with_scores([0.90] * 10)
        self.assertAlmostEqual(attempt.mean, 0.90)
        self.assertFalse(attempt.accepted)
        self.assertEqual(attempt.outcome, 'reject')

    def test_mean_and_floor_met_accepts(self):
        verifier, attempt = self.login_with_scores([0.93] * 10)
        self.assertAlmostEqual(attempt.mean, 0.93)
        self.assertAlmostEqual(attempt.min, 0.93)
        self.assertTrue(attempt.accepted)
        self.assertEqual(verifier.state, VerificationState.DECIDED_ACCEPT)
        self.assertEqual(self.store.get_current_user(), 'alice')
        self.assertIn('Face verification successful!', self.notifier.messages(SUCCESS))

    def test_is_accepted_requires_both(self):
        verifier = self.build()
        self.assertTrue(verifier.is_accepted(0.92, 0.85))
        self.assertFalse(verifier.is_accepted(0.99, 0.84))
        self.assertFalse(verifier.is_accepted(0.91, 0.91))

    def test_attempt_has_exactly_n_snapshots(self):
        verifier, attempt = self.login_with_scores([0.93] * 10)
        self.assertEqual(len(attempt.snapshots), 10)
        self.assertEqual(len(attempt.scores), 10)

    def test_reject_does_not_set_identity(self):
        self.login_with_scores([0.5] * 10)
        self.assertIsNone(self.store.get_current_user())


class TestLockout(VerifierTestCase):

    def setUp(self):
        super().setUp()
        self.enroll('alice')
        self.enroll('bob')
        self.verifier = self.build(scorer=FixedScoreScorer([0.5]))

    def fail_login(self, username='alice'):
        attempt = asyncio.run(self.verifier.login(username))
        self.assertFalse(attempt.accepted)

    def test_three_rejects_lock_out_the_fourth_attempt(self):
        for _ in range(3):
            self.fail_login()
        self.assertEqual(self.verifier.lockout.failures, 3)

        with self.assertRaises(LockedOutError):
            self.verifier.begin_login('alice')
        self.assertEqual(self.verifier.state, VerificationState.FORM)
        self.assertEqual(self.verifier.lockout.failures, 3)

    def test_changing_username_resets_counter(self):
        for _ in range(3):
            self.fail_login()

        self.verifier.begin_login('bob')
        self.assertEqual(self.verifier.lockout.failures, 0)
        self.assertEqual(self.verifier.state, VerificationState.CAPTURING)

        self.verifier.reset()
        self.verifier.begin_login('alice')
        self.assertEqual(self.verifier.state, VerificationState.CAPTURING)

    def test_counter_survives_retry_with_same_username(self):
        self.fail_login()
        self.fail_login()
        self.assertEqual(self.verifier.lockout.failures, 2)
        self.assertIn('Face verification failed. Please try again (1 attempts left).',
                      self.notifier.messages(ERROR))

    def test_lockout_checked_at_capture_gate(self):
        self.verifier.begin_login('alice')
        self.verifier.lockout.failures = 3

        with self.assertRaises(LockedOutError):
            asyncio.run(self.verifier.capture())
        self.assertEqual(self.verifier.state, VerificationState.FORM)

    def test_success_resets_counter(self):
        self.fail_login()
        self.verifier.scorer = FixedScoreScorer([0.99])
        attempt = asyncio.run(self.verifier.login('alice'))
        self.assertTrue(attempt.accepted)
        self.assertEqual(self.verifier.lockout.failures, 0)

    def test_explicit_lockout_reset(self):
        for _ in range(3):
            self.fail_login()
        self.verifier.reset_lockout()
        self.verifier.begin_login('alice')
        self.assertEqual(self.verifier.state, VerificationState.CAPTURING)


class TestTransitions(VerifierTestCase):

    def test_unknown_user(self):
        verifier = self.build()
        with self.assertRaises(UnknownUserError):
            verifier.begin_login('mallory')
        self.assertEqual(verifier.state, VerificationState.FORM)
        self.assertIn('Username not found: mallory', self.notifier.messages(ERROR))

    def test_empty_username(self):
        verifier = self.build()
        with self.assertRaises(InvalidUsernameError):
            verifier.begin_login('   ')

    def test_capture_requires_capturing_state(self):
        verifier = self.build()
        with self.assertRaises(InvalidTransitionError):
            asyncio.run(verifier.capture())

    def test_decide_requires_scoring_state(self):
        verifier = self.build()
        with self.assertRaises(InvalidTransitionError):
            asyncio.run(verifier.decide())

    def test_step_by_step_flow(self):
        self.enroll('alice')
        verifier = self.build()

        verifier.begin_login('alice')
        self.assertEqual(verifier.state, VerificationState.CAPTURING)
        asyncio.run(verifier.capture())
        self.assertEqual(verifier.state, VerificationState.SCORING)
        attempt = asyncio.run(verifier.decide())

        # identical static frames give identical crops
        self.assertTrue(attempt.accepted)
        self.assertAlmostEqual(attempt.min, 1.0)
        self.assertIs(verifier.last_attempt, attempt)
        self.assertIsNone(verifier.attempt)

    def test_accept_is_terminal_until_reset(self):
        self.enroll('alice')
        verifier = self.build()
        asyncio.run(verifier.login('alice'))

        with self.assertRaises(InvalidTransitionError):
            verifier.begin_login('alice')

        verifier.reset()
        self.assertEqual(verifier.state, VerificationState.FORM)
        verifier.begin_login('alice')

    def test_camera_failure_returns_to_form(self):
        self.enroll('alice')
        verifier = self.build()
        verifier.frame_source = StaticFrameSource([])

        with self.assertRaises(CameraUnavailable):
            asyncio.run(verifier.login('alice'))
        self.assertEqual(verifier.state, VerificationState.FORM)
        self.assertEqual(verifier.lockout.failures, 0)

    def test_logout_clears_identity(self):
        self.enroll('alice')
        verifier = self.build()
        asyncio.run(verifier.login('alice'))
        self.assertEqual(verifier.current_user(), 'alice')

        verifier.logout()
        self.assertIsNone(verifier.current_user())
        self.assertEqual(verifier.state, VerificationState.FORM)


class TestEnrollment(VerifierTestCase):

    def test_enroll_stores_exactly_n(self):
        record = self.enroll('alice')
        self.assertEqual(len(record.snapshots), 10)
        self.assertIs(self.store.get('alice'), record)
        self.assertIn('Registration successful!', self.notifier.messages(SUCCESS))

    def test_enroll_survives_detection_failures(self):
        detector = ScriptedDetector([None, None, None])
        verifier = self.build(detector=detector)
        record = asyncio.run(verifier.enroll('alice'))
        self.assertEqual(len(record.snapshots), 10)
        self.assertEqual(verifier.state, VerificationState.ENROLLED)

    def test_duplicate_enrollment_leaves_record_unmodified(self):
        original = self.enroll('alice')
        verifier = self.build()

        with self.assertRaises(DuplicateUserError):
            asyncio.run(verifier.enroll('alice'))
        self.assertIs(self.store.get('alice'), original)
        self.assertEqual(verifier.state, VerificationState.FORM)

    def test_reenroll_with_replace(self):
        original = self.enroll('alice')
        replacement = asyncio.run(self.build().enroll('alice', replace=True))
        self.assertIsNot(replacement, original)
        self.assertIs(self.store.get('alice'), replacement)

    def test_abandoned_enrollment_writes_nothing(self):
        self.config['acquisition']['max_attempts_per_slot'] = 3
        detector = ScriptedDetector(default_confidence=None)
        verifier = self.build(detector=detector)

        with self.assertRaises(AcquisitionAbandonedError):
            asyncio.run(verifier.enroll('alice'))
        self.assertFalse(self.store.exists('alice'))
        self.assertEqual(verifier.state, VerificationState.FORM)

    def test_storage_failure_returns_to_form(self):
        test_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, test_dir, True)
        db_dir = os.path.join(test_dir, 'db')
        self.store = EnrollmentStore({'storage': {'database_file': os.path.join(db_dir, 'enrollments.pkl')}})
        verifier = self.build()
        shutil.rmtree(db_dir)

        with self.assertRaises(StorageError):
            asyncio.run(verifier.enroll('alice'))
        self.assertEqual(verifier.state, VerificationState.FORM)
        self.assertFalse(self.store.exists('alice'))
        self.assertTrue(any('Could not save enrollment database' in message
                            for message in self.notifier.messages(ERROR)))

        os.makedirs(db_dir)
        record = asyncio.run(verifier.enroll('alice'))
        self.assertIs(self.store.get('alice'), record)

    def test_short_capture_set_returns_to_form(self):
        verifier = self.build()

        async def short_acquire(username, frame_source):
            return [object()] * (verifier.required_count - 1)

        verifier.acquisition.acquire = short_acquire
        with self.assertRaises(IncompleteCaptureError):
            asyncio.run(verifier.enroll('alice'))
        self.assertEqual(verifier.state, VerificationState.FORM)
        self.assertFalse(self.store.exists('alice'))

        self.enroll('bob')
        verifier.begin_login('bob')
        with self.assertRaises(IncompleteCaptureError):
            asyncio.run(verifier.capture())
        self.assertEqual(verifier.state, VerificationState.FORM)
        self.assertEqual(verifier.lockout.failures, 0)

    def test_statistics(self):
        self.enroll('alice')
        verifier = self.build(scorer=FixedScoreScorer([0.5]))
        asyncio.run(verifier.login('alice'))

        stats = verifier.get_statistics()
        self.assertEqual(stats['login_attempts'], 1)
        self.assertEqual(stats['rejected'], 1)
        self.assertEqual(stats['total_users'], 1)
        self.assertEqual(stats['failed_attempts'], 1)


class TestLockoutCounter(unittest.TestCase):

    def test_counter_semantics(self):
        counter = LockoutCounter(max_failures=2)
        counter.track('alice')
        counter.record_failure()
        counter.track('alice')
        self.assertEqual(counter.failures, 1)
        counter.record_failure()
        self.assertTrue(counter.is_locked)
        self.assertEqual(counter.remaining, 0)
        counter.track('bob')
        self.assertEqual(counter.failures, 0)
        self.assertFalse(counter.is_locked)


if __name__ == '__main__':
    unittest.main()

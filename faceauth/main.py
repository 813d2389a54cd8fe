"""
Main Application Module

Command line front-end for enrollment and face login. Wires the detector,
capture controller, acquisition session, scorer and store together from
the YAML configuration.
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

from .acquisition import AcquisitionSession
from .camera import CameraFrameSource, FrameSource, StaticFrameSource
from .capture import CaptureController
from .config import load_config
from .enrollment_store import EnrollmentStore
from .errors import FaceAuthError
from .face_detector import Detector, create_detector
from .notifications import LoggingNotifier, Notifier
from .similarity import SimilarityScorer, create_scorer
from .verifier import FaceVerifier

logger = logging.getLogger(__name__)


def setup_logging(config: Dict[str, Any]):
    """Configure root logging from the logging section."""
    logging_config = config.get('logging', {})
    handlers = [logging.StreamHandler(sys.stdout)]
    if logging_config.get('file'):
        handlers.append(logging.FileHandler(logging_config['file']))

    logging.basicConfig(
        level=getattr(logging, str(logging_config.get('level', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


async def build_verifier(config: Dict[str, Any], frame_source: FrameSource,
                         notifier: Optional[Notifier] = None,
                         detector: Optional[Detector] = None,
                         scorer: Optional[SimilarityScorer] = None,
                         store: Optional[EnrollmentStore] = None) -> FaceVerifier:
    """
    Assemble a verifier. The detector is initialized before anything uses it.

    Raises:
        ModelLoadError: If the detector cannot be initialized
    """
    notifier = notifier or LoggingNotifier()
    detector = detector or create_detector(config)
    await detector.init()

    capture = CaptureController(detector, config)
    acquisition = AcquisitionSession(capture, config, notifier)
    return FaceVerifier(
        config,
        acquisition=acquisition,
        scorer=scorer or create_scorer(config),
        store=store or EnrollmentStore(config),
        frame_source=frame_source,
        notifier=notifier
    )


def create_frame_source(config: Dict[str, Any], args: argparse.Namespace) -> FrameSource:
    if args.images:
        return StaticFrameSource.from_files(args.images)
    if args.video:
        return CameraFrameSource(config, device=args.video)
    return CameraFrameSource(config, device=args.camera)


async def run_command(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    store = EnrollmentStore(config)

    # Commands that never touch the camera
    if args.command == 'list':
        usernames = store.list_usernames()
        print(f"Enrolled users ({len(usernames)}):")
        for username in usernames:
            record = store.get(username)
            print(f"  {username}: {len(record.snapshots)} face images, enrolled {record.enrolled_at}")
        return 0
    if args.command == 'whoami':
        print(store.get_current_user() or "Not logged in")
        return 0
    if args.command == 'logout':
        store.clear_current_user()
        print("Logged out successfully")
        return 0
    if args.command == 'remove':
        return 0 if store.remove(args.username) else 1

    with create_frame_source(config, args) as frame_source:
        verifier = await build_verifier(config, frame_source, store=store)

        if args.wait_for_face:
            region = await verifier.acquisition.capture.wait_for_face(
                frame_source, timeout=args.wait_for_face
            )
            if region is None:
                print("No face detected. Please position your face in the camera.")
                return 1
            print("Face detected. Ready to capture.")

        if args.command == 'enroll':
            record = await verifier.enroll(args.username, replace=args.replace)
            print(f"Enrolled {record.username} with {len(record.snapshots)} face images")
            return 0

        if args.command == 'login':
            attempt = await verifier.login(args.username)
            print(f"Mean similarity {attempt.mean:.3f}, minimum {attempt.min:.3f}: {attempt.outcome}")
            if attempt.accepted:
                print(f"Welcome, {attempt.username}!")
                return 0
            return 1

    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Face Authentication System')
    parser.add_argument('--config', '-c', default='config/config.yaml',
                        help='Configuration file path')
    parser.add_argument('--camera', type=int, default=0,
                        help='Camera device ID')
    parser.add_argument('--video', '-v', type=str,
                        help='Video file path (instead of camera)')
    parser.add_argument('--images', nargs='+',
                        help='Image files to use as frames (instead of camera)')
    parser.add_argument('--wait-for-face', type=float, default=0, metavar='SECONDS',
                        help='Run live detection until a face is visible before capturing')

    subparsers = parser.add_subparsers(dest='command', required=True)

    enroll = subparsers.add_parser('enroll', help='Register a new user')
    enroll.add_argument('username')
    enroll.add_argument('--replace', action='store_true',
                        help='Replace an existing enrollment')

    login = subparsers.add_parser('login', help='Sign in using your face')
    login.add_argument('username')

    remove = subparsers.add_parser('remove', help='Delete an enrolled user')
    remove.add_argument('username')

    subparsers.add_parser('list', help='List enrolled users')
    subparsers.add_parser('whoami', help='Show the authenticated user')
    subparsers.add_parser('logout', help='Clear the authenticated user')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except FaceAuthError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(config)

    try:
        return asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except FaceAuthError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())

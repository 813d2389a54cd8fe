"""
Enrollment Store Module

Keeps enrollment records keyed by username together with the
current-authenticated-identity marker, persisted to a pickle file.
Record operations lock per username; the file is rewritten atomically.
"""

import logging
import os
import pickle
import tempfile
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import DuplicateUserError, InvalidUsernameError, StorageError
from .types import EnrollmentRecord

logger = logging.getLogger(__name__)


class EnrollmentStore:
    """Username-keyed store of enrollment records."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize enrollment store.

        Args:
            config: Configuration dictionary with storage settings. A
                database_file of None keeps everything in memory.
        """
        self.storage_config = config.get('storage', {})
        self.database_file = self.storage_config.get('database_file', 'data/enrollments.pkl')

        self.records: Dict[str, EnrollmentRecord] = {}
        self.current_user: Optional[str] = None

        self._key_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._file_lock = threading.Lock()

        if self.database_file:
            self._ensure_directories()
            self.load_database()

        logger.info(f"Enrollment store initialized ({len(self.records)} users)")

    def _ensure_directories(self):
        """Create the database directory if it doesn't exist."""
        directory = os.path.dirname(self.database_file)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def _lock_for(self, username: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(username)
            if lock is None:
                lock = self._key_locks[username] = threading.Lock()
            return lock

    @staticmethod
    def _check_username(username: str):
        if not username or not username.strip():
            raise InvalidUsernameError("Username is required")

    def create(self, record: EnrollmentRecord) -> EnrollmentRecord:
        """
        Store a record for a username that is not yet enrolled.

        Raises:
            DuplicateUserError: If the username already has a record
            StorageError: If the database could not be written; the store is unchanged
        """
        self._check_username(record.username)
        with self._lock_for(record.username), self._file_lock:
            if record.username in self.records:
                raise DuplicateUserError(record.username)
            records = dict(self.records)
            records[record.username] = record
            self._commit(records, self.current_user)

        logger.info(f"Enrolled {record.username} with {len(record.snapshots)} face images")
        return record

    def save(self, record: EnrollmentRecord) -> EnrollmentRecord:
        """Create or replace the record for its username."""
        self._check_username(record.username)
        with self._lock_for(record.username), self._file_lock:
            replaced = record.username in self.records
            records = dict(self.records)
            records[record.username] = record
            self._commit(records, self.current_user)

        logger.info(f"{'Replaced' if replaced else 'Saved'} enrollment for {record.username}")
        return record

    def get(self, username: str) -> Optional[EnrollmentRecord]:
        return self.records.get(username)

    def exists(self, username: str) -> bool:
        return username in self.records

    def remove(self, username: str) -> bool:
        """
        Remove a user's record.

        Returns:
            True if a record was removed
        """
        with self._lock_for(username), self._file_lock:
            if username not in self.records:
                logger.error(f"User {username} not found")
                return False
            records = dict(self.records)
            del records[username]
            current_user = None if self.current_user == username else self.current_user
            self._commit(records, current_user)

        logger.info(f"Removed enrollment for {username}")
        return True

    def list_usernames(self) -> List[str]:
        return sorted(self.records)

    def set_current_user(self, username: Optional[str]):
        """Mark the authenticated identity; None clears it."""
        with self._file_lock:
            self._commit(self.records, username)

    def get_current_user(self) -> Optional[str]:
        return self.current_user

    def clear_current_user(self):
        self.set_current_user(None)

    def clear_all_data(self):
        """Drop every record and the identity marker."""
        with self._file_lock:
            self._commit({}, None)
        logger.info("All enrollment data cleared")

    def get_statistics(self) -> Dict[str, Any]:
        """Get store statistics."""
        snapshot_counts = [len(record.snapshots) for record in self.records.values()]
        return {
            'total_users': len(self.records),
            'total_snapshots': sum(snapshot_counts),
            'current_user': self.current_user,
            'database_file': self.database_file
        }

    def _commit(self, records: Dict[str, EnrollmentRecord], current_user: Optional[str]):
        """Write the new state to disk first, then make it current. Caller holds the file lock."""
        if self.database_file:
            self._write(records, current_user, self.database_file)
        self.records = records
        self.current_user = current_user

    def _write(self, records: Dict[str, EnrollmentRecord],
               current_user: Optional[str], filepath: str):
        data = {
            'records': records,
            'current_user': current_user,
            'save_timestamp': datetime.now().isoformat(),
            'version': '1.0'
        }

        directory = os.path.dirname(os.path.abspath(filepath))
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
            with os.fdopen(fd, 'wb') as f:
                pickle.dump(data, f)
            os.replace(tmp_path, filepath)
        except (OSError, pickle.PicklingError) as e:
            logger.error(f"Failed to save database: {e}")
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StorageError(f"Could not save enrollment database: {e}") from e

        logger.debug(f"Database saved to {filepath}")

    def save_database(self, filepath: Optional[str] = None) -> bool:
        """
        Write the store to disk through a temporary file and an atomic rename.

        Args:
            filepath: Custom file path (optional)

        Returns:
            True if saved successfully

        Raises:
            StorageError: If the file could not be written
        """
        with self._file_lock:
            self._write(self.records, self.current_user, filepath or self.database_file)
        return True

    def load_database(self, filepath: Optional[str] = None) -> bool:
        """
        Load the store from disk.

        Args:
            filepath: Custom file path (optional)

        Returns:
            True if loaded successfully
        """
        if filepath is None:
            filepath = self.database_file

        if not os.path.exists(filepath):
            logger.info("No existing database found, starting fresh")
            return False

        try:
            with open(filepath, 'rb') as f:
                data = pickle.load(f)
        except Exception as e:
            logger.error(f"Failed to load database: {e}")
            return False

        self.records = data.get('records', {})
        self.current_user = data.get('current_user')

        logger.info(f"Database loaded from {filepath}")
        logger.info(f"Loaded {len(self.records)} enrolled users")
        return True

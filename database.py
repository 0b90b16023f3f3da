"""
Persisted store document with revision stamps, backups and schema migration
"""

import os
import json
import shutil
import glob
import threading
import time
from datetime import datetime
from typing import Dict, List, Optional

from models import SCHEMA_VERSION, StoreDocument
from exceptions import ConflictError, ValidationError
from validation import validate_host_rule
from logger import logger


def migrate_document(data: Dict) -> Dict:
    """
    Bring a raw persisted document up to the current schema.

    Version 0 documents carry a per-group ``enabled`` flag and may lack
    ``activeGroups``; the active set is derived from those flags once and the
    flags are dropped. Their hosts are re-validated: entries that fail
    validation are dropped with a warning, as are (ip, domain) pairs that
    only became duplicates once the domain was lower-cased. Every version
    gets stale active ids pruned.
    """
    version = int(data.get("schemaVersion", 0))
    groups = [g for g in data.get("hostsGroups") or [] if isinstance(g, dict)]

    if version < 1:
        if "activeGroups" not in data:
            data["activeGroups"] = [g.get("id") for g in groups if g.get("enabled", True)]
        for group in groups:
            group.pop("enabled", None)
            group["hosts"] = _migrate_hosts(group)

    known_ids = {g.get("id") for g in groups}
    active = []
    for group_id in data.get("activeGroups") or []:
        if group_id in known_ids and group_id not in active:
            active.append(group_id)

    data["hostsGroups"] = groups
    data["activeGroups"] = active
    data["schemaVersion"] = SCHEMA_VERSION
    data.setdefault("revision", 0)
    return data


def _migrate_hosts(group: Dict) -> List[Dict]:
    hosts, seen = [], set()
    for host in group.get("hosts") or []:
        if not isinstance(host, dict):
            continue
        try:
            ip, domain = validate_host_rule(host.get("ip"), host.get("domain"))
        except ValidationError as e:
            logger.warning(f"Dropping invalid legacy rule in group {group.get('name')!r}: {e}",
                           group_id=group.get("id"), ip=host.get("ip"), domain=host.get("domain"))
            continue
        if (ip, domain) in seen:
            logger.warning(f"Dropping duplicate legacy rule {ip} {domain} in group {group.get('name')!r}",
                           group_id=group.get("id"))
            continue
        seen.add((ip, domain))
        host["ip"], host["domain"] = ip, domain
        hosts.append(host)
    return hosts


class StoreDatabase:
    """Manages the persisted document with compare-and-swap writes and backups"""

    def __init__(self, db_file: str, max_backups: int = None):
        self.db_file = db_file
        self.backup_file = f"{db_file}.backup"
        self.lock_file = f"{db_file}.lock"
        self.max_backups = max_backups or int(os.getenv('DB_MAX_BACKUPS', '5'))
        self.debug_log_chars = int(os.getenv('DB_DEBUG_LOG_CHARS', '500'))

        # The RLock serialises threads of this process; the lock file
        # serialises processes sharing the same document.
        self._lock = threading.RLock()
        self._lock_depth = 0
        self._lock_timeout = float(os.getenv('DB_LOCK_TIMEOUT', '30.0'))

        self._validate_configuration()

    def _validate_configuration(self):
        """Validate database configuration"""
        if self.max_backups < 1 or self.max_backups > 50:
            raise ValueError(f"DB_MAX_BACKUPS must be between 1 and 50, got {self.max_backups}")

        if self._lock_timeout < 1.0 or self._lock_timeout > 300.0:
            raise ValueError(f"DB_LOCK_TIMEOUT must be between 1.0 and 300.0 seconds, got {self._lock_timeout}")

        if self.debug_log_chars < 100 or self.debug_log_chars > 2000:
            raise ValueError(f"DB_DEBUG_LOG_CHARS must be between 100 and 2000, got {self.debug_log_chars}")

        logger.debug("Database configuration validated",
                     db_file=self.db_file,
                     max_backups=self.max_backups,
                     lock_timeout=self._lock_timeout)

    def _acquire_lock_with_timeout(self):
        """Acquire the thread lock and, once per thread, the inter-process lock file"""
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise RuntimeError(f"Failed to acquire database lock within {self._lock_timeout} seconds")

        if self._lock_depth == 0:
            try:
                self._acquire_lock_file()
            except Exception:
                self._lock.release()
                raise
        self._lock_depth += 1
        return True

    def _acquire_lock_file(self):
        directory = os.path.dirname(self.lock_file)
        if directory:
            os.makedirs(directory, exist_ok=True)

        deadline = time.monotonic() + self._lock_timeout
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._lock_file_is_stale():
                    logger.warning(f"Removing stale lock file {self.lock_file}")
                    try:
                        os.remove(self.lock_file)
                    except FileNotFoundError:
                        pass
                    continue
                if time.monotonic() > deadline:
                    raise RuntimeError(f"Failed to acquire lock file {self.lock_file} within {self._lock_timeout} seconds")
                time.sleep(0.01)
                continue
            try:
                os.write(fd, str(os.getpid()).encode())
            finally:
                os.close(fd)
            return

    def _lock_file_is_stale(self) -> bool:
        try:
            age = time.time() - os.path.getmtime(self.lock_file)
        except FileNotFoundError:
            return True
        return age > self._lock_timeout

    def _release_lock(self):
        """Release the database lock"""
        self._lock_depth -= 1
        if self._lock_depth == 0:
            try:
                os.remove(self.lock_file)
            except FileNotFoundError:
                logger.warning(f"Lock file {self.lock_file} vanished while held")
        self._lock.release()

    def load(self) -> StoreDocument:
        """Load the document with automatic backup restoration on corruption"""
        self._acquire_lock_with_timeout()
        try:
            return StoreDocument.from_dict(self._load_raw())
        finally:
            self._release_lock()

    def _load_raw(self) -> Dict:
        if os.path.exists(self.db_file):
            try:
                return migrate_document(self._load_from_file(self.db_file))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Main store corrupted: {e}")
                self._cleanup_corrupted_file(self.db_file)
                return migrate_document(self._try_backup_restore())

        if os.path.exists(self.backup_file):
            try:
                logger.info("Main store not found, trying backup...")
                data = self._load_from_file(self.backup_file)
                shutil.copy2(self.backup_file, self.db_file)
                logger.info("Successfully restored main store from backup")
                return migrate_document(data)
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.error(f"Backup store also corrupted: {e}")
                self._cleanup_corrupted_file(self.backup_file)

        logger.debug("No store found, starting fresh")
        return migrate_document({})

    def read_revision(self) -> Optional[int]:
        """Current on-disk revision without taking the lock; None if unreadable"""
        try:
            with open(self.db_file, 'r') as f:
                return int(json.load(f).get("revision", 0))
        except FileNotFoundError:
            return 0
        except (json.JSONDecodeError, ValueError, AttributeError, OSError) as e:
            logger.debug(f"Could not read store revision: {e}")
            return None

    def touch(self):
        """Read the store once; used by other contexts as a cheap wake-up"""
        return self.read_revision()

    def save(self, document: StoreDocument, expected_revision: int) -> int:
        """
        Write the document if the stored revision still equals expected_revision.

        Returns the new revision, which is also set on the document. Raises
        ConflictError when another writer got there first.
        """
        self._acquire_lock_with_timeout()
        try:
            current = int(self._load_raw().get("revision", 0))
            if current != expected_revision:
                raise ConflictError(
                    f"Store revision changed from {expected_revision} to {current}",
                    expected_revision=expected_revision,
                    actual_revision=current
                )

            if os.path.exists(self.db_file):
                self._create_backup()

            document.revision = current + 1
            document.schema_version = SCHEMA_VERSION
            self._save_to_file(document.to_dict(), self.db_file)
            logger.debug(f"Saved store at revision {document.revision}")
            return document.revision
        finally:
            self._release_lock()

    def migrate(self) -> bool:
        """Persist the migrated form of an outdated document; True if it was rewritten"""
        self._acquire_lock_with_timeout()
        try:
            if not os.path.exists(self.db_file):
                return False
            raw = self._load_from_file(self.db_file)
            version = int(raw.get("schemaVersion", 0))
            if version >= SCHEMA_VERSION:
                return False
            self._create_backup()
            migrated = migrate_document(raw)
            migrated["revision"] = int(migrated.get("revision", 0)) + 1
            self._save_to_file(migrated, self.db_file)
            logger.info(f"Migrated store from schema {version} to {SCHEMA_VERSION}",
                        from_version=version, to_version=SCHEMA_VERSION)
            return True
        finally:
            self._release_lock()

    def _cleanup_corrupted_file(self, file_path: str):
        """Move a corrupted store file aside to a .corrupted copy"""
        try:
            if os.path.exists(file_path):
                corrupted_backup = f"{file_path}.corrupted.{int(time.time())}"
                shutil.move(file_path, corrupted_backup)
                logger.info(f"Moved corrupted file {file_path} to {corrupted_backup}")
        except OSError as e:
            logger.warning(f"Failed to cleanup corrupted file {file_path}: {e}")

    def _load_from_file(self, file_path: str) -> Dict:
        with open(file_path, 'r') as f:
            raw_content = f.read()
        logger.debug(f"Raw store content: {raw_content[:self.debug_log_chars]}...")

        data = json.loads(raw_content)
        if not isinstance(data, dict):
            raise ValueError(f"Invalid store format: expected dict, got {type(data)}")
        if not isinstance(data.get("hostsGroups", []), list):
            raise ValueError("Invalid store format: hostsGroups must be a list")
        return data

    def _try_backup_restore(self) -> Dict:
        """Try to restore from backup files, newest first"""
        backup_pattern = f"{self.db_file}.backup.*"
        backup_files = sorted(glob.glob(backup_pattern), reverse=True)

        for backup_file in backup_files:
            try:
                logger.info(f"Attempting to restore from {backup_file}")
                data = self._load_from_file(backup_file)
                shutil.copy2(backup_file, self.db_file)
                logger.info(f"Successfully restored from {backup_file}")
                return data
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Backup {backup_file} also corrupted: {e}")
                continue

        if os.path.exists(self.backup_file):
            try:
                logger.info("Attempting to restore from main backup file")
                data = self._load_from_file(self.backup_file)
                shutil.copy2(self.backup_file, self.db_file)
                logger.info("Successfully restored from main backup file")
                return data
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.error(f"Main backup file also corrupted: {e}")

        logger.warning("No valid backup found, starting fresh")
        return {}

    def _create_backup(self):
        """Create a timestamped backup of the current store"""
        try:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
            backup_name = f"{self.db_file}.backup.{timestamp}"
            shutil.copy2(self.db_file, backup_name)
            shutil.copy2(self.db_file, self.backup_file)
            self._cleanup_old_backups()
        except OSError as e:
            logger.warning(f"Failed to create backup: {e}")

    def _cleanup_old_backups(self):
        """Remove old backup files, keeping only the most recent ones"""
        backup_pattern = f"{self.db_file}.backup.*"
        backup_files = sorted(glob.glob(backup_pattern), reverse=True)

        for backup_file in backup_files[self.max_backups:]:
            try:
                os.remove(backup_file)
            except OSError as e:
                logger.warning(f"Failed to remove old backup {backup_file}: {e}")

    def _save_to_file(self, data: Dict, file_path: str):
        directory = os.path.dirname(file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        # Write to temporary file first, then rename (atomic operation)
        temp_file = f"{file_path}.tmp"
        with open(temp_file, 'w') as f:
            json.dump(data, f, indent=2)

        os.replace(temp_file, file_path)

#!/usr/bin/env python3
"""
🕐 Cron script : purge des données archivées dont la rétention est expirée

Appelé une fois par jour (cron système ou scheduler de la plateforme).
Même opération que GET /api/cron/cleanup.

🔒 FILE LOCK: Empêche deux crons de tourner en parallèle
"""
import fcntl
import os
import sys

import structlog

from gmb_sync.database import SessionLocal
from gmb_sync.errors import StorageError
from gmb_sync.middleware.logging import configure_logging
from gmb_sync.services.retention import sweep_expired_archives

LOCK_FILE = "/tmp/gmb_cron_cleanup.lock"

logger = structlog.get_logger("cron_cleanup")


def acquire_lock():
    """
    Lock exclusif via fcntl (libéré automatiquement si le process crash)

    Returns:
        File descriptor si lock acquis, None sinon
    """
    try:
        lock_fd = open(LOCK_FILE, "w")
        fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        lock_fd.write(str(os.getpid()))
        lock_fd.flush()
        return lock_fd
    except OSError:
        return None


def release_lock(lock_fd):
    if lock_fd:
        fcntl.flock(lock_fd, fcntl.LOCK_UN)
        lock_fd.close()


def main() -> int:
    configure_logging()

    lock = acquire_lock()
    if not lock:
        logger.warning("cron_cleanup_already_running")
        return 0

    db = SessionLocal()
    try:
        result = sweep_expired_archives(db)
        logger.info(
            "cron_cleanup_completed",
            accounts_processed=result["accounts_processed"],
            total_deleted=result["total_deleted"],
        )
        return 0
    except StorageError as e:
        logger.error("cron_cleanup_failed", error=e.message)
        return 1
    finally:
        db.close()
        release_lock(lock)


if __name__ == "__main__":
    sys.exit(main())

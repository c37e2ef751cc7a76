# Core - Central SQLite Connection Helper
#
# Every Keyward SQLite database goes through `connect()` / `session()`
# from this module instead of raw `sqlite3.connect()`. This ensures:
#
#   - WAL journal mode (concurrent readers + one writer)
#   - busy_timeout to avoid SQLITE_BUSY under contention
#   - foreign_keys enforcement on every connection, which the
#     ON DELETE CASCADE ownership rules depend on
#
# sqlite3 errors never leave this module's callers untranslated:
# session() re-raises them as StorageError.

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

from ..exceptions import KeywardError, StorageError

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and safe PRAGMAs.

    Args:
        db_path: Path to the database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
        check_same_thread: Passed to sqlite3.connect().

    Returns:
        sqlite3.Connection with WAL mode, busy_timeout, and foreign_keys.
    """
    conn = sqlite3.connect(
        str(db_path),
        check_same_thread=check_same_thread,
        timeout=BUSY_TIMEOUT_MS / 1000,
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA foreign_keys=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def session(db_path: Union[str, Path]) -> Iterator[sqlite3.Connection]:
    """One short-lived connection that is a single transaction.

    Commits when the block exits cleanly, rolls back on any exception
    and always closes. Keyward errors raised inside the block (for
    example ConflictError from an epoch check) propagate unchanged after
    the rollback; sqlite3 errors become StorageError.
    """
    try:
        conn = connect(db_path, row_factory=True)
    except sqlite3.Error as e:
        raise StorageError(f"Cannot open database {db_path}: {e}") from e

    try:
        yield conn
        conn.commit()
    except KeywardError:
        conn.rollback()
        raise
    except sqlite3.Error as e:
        conn.rollback()
        logger.error(f"Database transaction rolled back: {e}")
        raise StorageError(str(e)) from e
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()

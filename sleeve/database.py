"""
The database module owns the SQLite catalog: connections, transactions, and schema "migration."

The catalog is derived entirely from the music source directory, so we never migrate it in place.
Whenever the schema, the relevant config, or the version changes, we delete it and rebuild.
"""

import binascii
import contextlib
import hashlib
import json
import logging
import random
import sqlite3
import time
from collections.abc import Iterator
from pathlib import Path

from sleeve.common import VERSION, SleeveError
from sleeve.config import Config

logger = logging.getLogger(__name__)

CATALOG_SCHEMA_PATH = Path(__file__).resolve().parent / "catalog.sql"

# Truncation order for a rebuild. Join tables go first, then the entities they reference. Art rows
# are content-addressed and survive rebuilds.
TRUNCATE_ORDER = [
    "albums_art",
    "artists_art",
    "tracks_art",
    "albums_tracks",
    "artists_albums",
    "artists_tracks",
    "albums",
    "artists",
    "tracks",
]


class StoreError(SleeveError):
    pass


@contextlib.contextmanager
def connect(c: Config) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(
        c.catalog_database_path,
        detect_types=sqlite3.PARSE_DECLTYPES,
        isolation_level=None,
        timeout=15.0,
        # Connections never leave the thread that opened them, but the reconciler thread and the
        # reader threads each open their own.
        check_same_thread=False,
    )
    try:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA journal_mode=WAL")
        yield conn
    except sqlite3.Error as e:
        raise StoreError(f"Catalog database error: {e}") from e
    finally:
        conn.close()


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    A simple context wrapper for a database transaction. Commits on exit and rolls back if an
    exception escapes.
    """
    tx_log_id = binascii.b2a_hex(random.randbytes(8)).decode()
    start_time = time.time()

    # If we're already in a transaction, don't create a nested transaction.
    if conn.in_transaction:
        logger.debug(f"Transaction {tx_log_id}. Starting nested transaction, NoOp.")
        yield conn
        logger.debug(
            f"Transaction {tx_log_id}. End of nested transaction. "
            f"Duration: {time.time() - start_time}."
        )
        return

    logger.debug(f"Transaction {tx_log_id}. Starting transaction from conn.")
    with conn:
        # BEGIN IMMEDIATE takes the write lock up front. A deferred transaction that later upgrades
        # to a write can fail with SQLITE_BUSY without waiting for the timeout.
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        logger.debug(
            f"Transaction {tx_log_id}. End of transaction from conn. "
            f"Duration: {time.time() - start_time}."
        )


def maybe_invalidate_database(c: Config) -> None:
    """
    "Migrate" the database. If the schema in the database does not match that on disk, then nuke the
    database and recreate it from scratch. Otherwise, no op.
    """
    with CATALOG_SCHEMA_PATH.open("rb") as fp:
        schema_hash = hashlib.sha256(fp.read()).hexdigest()

    # Hash the config fields that determine the catalog's contents. Relative track paths and stored
    # art paths are meaningless once these change.
    config_hash_fields = {
        "music_source_dir": str(c.music_source_dir),
        "art_dir": str(c.art_dir),
    }
    config_hash = hashlib.sha256(json.dumps(config_hash_fields).encode()).hexdigest()

    with connect(c) as conn:
        cursor = conn.execute(
            """
            SELECT EXISTS(
                SELECT * FROM sqlite_master
                WHERE type = 'table' AND name = '_schema_hash'
            )
            """
        )
        if cursor.fetchone()[0]:
            cursor = conn.execute("SELECT schema_hash, config_hash, version FROM _schema_hash")
            row = cursor.fetchone()
            if (
                row
                and row["schema_hash"] == schema_hash
                and row["config_hash"] == config_hash
                and row["version"] == VERSION
            ):
                # Everything matches! Exit!
                return

    logger.info(f"Catalog schema or config changed, recreating {c.catalog_database_path}")
    c.catalog_database_path.unlink(missing_ok=True)
    with connect(c) as conn:
        with CATALOG_SCHEMA_PATH.open("r") as fp:
            conn.executescript(fp.read())
        conn.execute(
            """
            CREATE TABLE _schema_hash (
                schema_hash TEXT
              , config_hash TEXT
              , version TEXT
              , PRIMARY KEY (schema_hash, config_hash, version)
            )
            """
        )
        conn.execute(
            "INSERT INTO _schema_hash (schema_hash, config_hash, version) VALUES (?, ?, ?)",
            (schema_hash, config_hash, VERSION),
        )


def truncate_catalog(c: Config) -> None:
    """Delete every catalog row except art, in dependency order."""
    with connect(c) as conn, transaction(conn):
        for table in TRUNCATE_ORDER:
            cursor = conn.execute(f"DELETE FROM {table}")
            logger.debug(f"Truncated {cursor.rowcount} rows from {table}")
    logger.info("Truncated the catalog")

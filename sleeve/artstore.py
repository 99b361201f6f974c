"""
The artstore module is a content-addressed store for cover images. Images are keyed by the SHA-256
of their bytes, so the same image is written to disk and recorded in the catalog exactly once.
"""

import hashlib
import logging
import os
import sqlite3

from sleeve.common import SleeveExpectedError
from sleeve.config import Config

logger = logging.getLogger(__name__)


class StorageUnavailableError(SleeveExpectedError):
    pass


def store_art(c: Config, conn: sqlite3.Connection, image: bytes) -> int:
    """Store an image and return its art ID. Storing an already-known image is a no-op."""
    digest = hashlib.sha256(image).hexdigest()
    cursor = conn.execute("SELECT id FROM art WHERE hash = ?", (digest,))
    if row := cursor.fetchone():
        logger.debug(f"Art {digest} already stored as art {row['id']}")
        return int(row["id"])

    # Fail loudly here: a missing art directory would otherwise look exactly like a library without
    # any cover art.
    if not c.art_dir.is_dir():
        raise StorageUnavailableError(f"Art directory {c.art_dir} does not exist")
    if not os.access(c.art_dir, os.W_OK):
        raise StorageUnavailableError(f"Art directory {c.art_dir} is not writable")

    path = c.art_dir / digest
    try:
        path.write_bytes(image)
    except OSError as e:
        raise StorageUnavailableError(f"Failed to write art to {path}: {e}") from e

    cursor = conn.execute(
        "INSERT INTO art (hash, path) VALUES (?, ?) RETURNING id",
        (digest, str(path)),
    )
    art_id = int(cursor.fetchone()["id"])
    logger.info(f"Stored new art {digest} as art {art_id}")
    return art_id

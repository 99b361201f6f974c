"""
The scanner module reconciles the catalog with the music source directory. It has two halves that
complement each other:

- `reconcile_existing` walks the catalog and checks every known track against the filesystem,
  deleting rows for removed files and re-reading files whose mtime advanced.
- `discover_new` walks the filesystem and ingests every supported audio file that the catalog does
  not know about yet. Known paths are skipped without being re-checked.

Change detection is by mtime alone. Touching a file re-ingests it even if its bytes are unchanged,
and a changed file whose mtime moved backwards is not noticed.

Any failure to read or write a file aborts the whole run. Tracks ingested before the failure stay
committed; since both halves are idempotent per file, re-running after a fix picks up where the
failed run stopped.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import typing
from collections.abc import Iterator
from pathlib import Path

from sleeve.audiotags import (
    AudioTags,
    UnreadableFileError,
    is_supported_audio_file,
    relative_track_path,
)
from sleeve.catalog import delete_track, list_track_states, track_exists, upsert_track
from sleeve.config import Config
from sleeve.database import connect, transaction

if typing.TYPE_CHECKING:
    from sleeve.library import LibraryState

logger = logging.getLogger(__name__)


def walk_files(root: Path) -> Iterator[Path]:
    """
    Yield every file under root, following symlinks. The walk uses an explicit stack rather than
    recursion, and refuses to descend into a directory that is its own ancestor, so symlink loops
    terminate. The same directory reached through two unrelated paths is walked twice.
    """
    try:
        root_stat = root.stat()
    except OSError as e:
        raise UnreadableFileError(f"Music source directory {root} is not readable: {e}") from e
    stack: list[tuple[Path, frozenset[tuple[int, int]]]] = [
        (root, frozenset([(root_stat.st_dev, root_stat.st_ino)]))
    ]
    while stack:
        directory, ancestors = stack.pop()
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except FileNotFoundError:
            logger.warning(f"Skipping {directory}: directory no longer exists")
            continue
        except OSError as e:
            raise UnreadableFileError(f"Failed to list directory {directory}: {e}") from e

        subdirs: list[tuple[Path, frozenset[tuple[int, int]]]] = []
        for entry in entries:
            path = Path(entry.path)
            try:
                if entry.is_dir(follow_symlinks=True):
                    st = entry.stat(follow_symlinks=True)
                    key = (st.st_dev, st.st_ino)
                    if key in ancestors:
                        logger.warning(f"Skipping {path}: symlink loop back to an ancestor directory")
                        continue
                    subdirs.append((path, ancestors | {key}))
                elif entry.is_file(follow_symlinks=True):
                    yield path
            except FileNotFoundError:
                logger.debug(f"Skipping {path}: vanished during the walk")
        # Push in reverse so that directories pop in name order.
        stack.extend(reversed(subdirs))


def ingest_track(
    c: Config,
    conn: sqlite3.Connection,
    path: Path,
    replace_track_id: int | None = None,
) -> int:
    """
    Read a file's tags and write them to the catalog in a single transaction. If replace_track_id is
    passed, that stale row is deleted in the same transaction before the fresh one is inserted.
    """
    tags = AudioTags.from_file(c, path)
    with transaction(conn):
        if replace_track_id is not None:
            delete_track(conn, replace_track_id)
        return upsert_track(c, conn, tags)


def discover_new(c: Config, state: LibraryState | None = None) -> int:
    """Ingest every supported audio file not yet in the catalog. Returns the number ingested."""
    logger.info(f"Scanning {c.music_source_dir} for new tracks")
    num_ingested = 0
    with connect(c) as conn:
        for path in walk_files(c.music_source_dir):
            if not is_supported_audio_file(path):
                continue
            relpath = relative_track_path(c, path)
            if track_exists(conn, relpath):
                logger.debug(f"Skipping known track {relpath}")
                continue
            logger.debug(f"Found new track {relpath}, reading tags")
            ingest_track(c, conn, path)
            num_ingested += 1
            if state is not None:
                state.mark_outdated()
    logger.info(f"Finished scanning {c.music_source_dir}: ingested {num_ingested} new tracks")
    return num_ingested


def reconcile_existing(c: Config, state: LibraryState | None = None) -> None:
    """Delete tracks whose files are gone and re-ingest tracks whose files changed."""
    logger.info("Checking cataloged tracks for changes on disk")
    num_deleted = num_updated = 0
    with connect(c) as conn:
        for track in list_track_states(conn):
            path = c.music_source_dir / track.path
            try:
                mtime = os.stat(path).st_mtime
            except (FileNotFoundError, NotADirectoryError):
                with transaction(conn):
                    delete_track(conn, track.id)
                logger.info(f"Deleted track {track.path} from the catalog: file no longer exists")
                num_deleted += 1
                if state is not None:
                    state.mark_outdated()
                continue
            except OSError as e:
                raise UnreadableFileError(f"Failed to stat {path}: {e}") from e

            if mtime <= track.last_modified:
                continue
            logger.info(f"Track {track.path} changed on disk, re-reading tags")
            ingest_track(c, conn, path, replace_track_id=track.id)
            num_updated += 1
            if state is not None:
                state.mark_outdated()
    logger.info(f"Finished checking cataloged tracks: {num_deleted} deleted, {num_updated} updated")

"""
The catalog module reconciles normalized tag records into the relational catalog and reads
structured snapshots back out of it.

Writes happen in a fixed order per track, because each step needs identifiers produced by the steps
before it:

1. Insert the track row.
2. Store the cover art (if any) and link it to the track.
3. Resolve the track artist and link it to the track.
4. Link the cover art to the track artist.
5. Resolve the album artist.
6. Resolve the album by its (name, album artist) identity, creating it if new.
7. Link the album to the track, with track and disc numbers.
8. Link the cover art to the album.

Every link is insert-if-absent. We never check for existence before writing a link.
"""

from __future__ import annotations

import dataclasses
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from sleeve.artstore import store_art
from sleeve.audiotags import AudioTags
from sleeve.config import Config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListAlbum:
    id: int
    name: str
    artist_name: str
    art_path: str | None

    def dump(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class AlbumTrack:
    id: int
    number: int
    artist: str
    name: str
    path: str
    art_path: str | None
    duration_seconds: int


@dataclass(frozen=True)
class AlbumDisc:
    number: int
    tracks: tuple[AlbumTrack, ...]


@dataclass(frozen=True)
class Album:
    """
    A snapshot of an album. Snapshots are cached and handed to every caller as the same object, so
    they are frozen all the way down.
    """

    id: int
    name: str
    album_artist_name: str
    art_path: str | None
    discs: tuple[AlbumDisc, ...]

    def dump(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class TrackState:
    """The slice of a track row needed to detect drift against the filesystem."""

    id: int
    path: str
    last_modified: float


def resolve_artist(conn: sqlite3.Connection, name: str) -> int:
    """
    Get or create an artist by exact name. Optimistically insert; if the name already existed, the
    insert is a no-op that returns nothing, and we select the existing row. Both statements run in the
    caller's transaction, so no other writer can slip in between them.
    """
    cursor = conn.execute(
        "INSERT INTO artists (name) VALUES (?) ON CONFLICT (name) DO NOTHING RETURNING id",
        (name,),
    )
    if row := cursor.fetchone():
        logger.debug(f"Created artist {name} as artist {row['id']}")
        return int(row["id"])
    cursor = conn.execute("SELECT id FROM artists WHERE name = ?", (name,))
    return int(cursor.fetchone()["id"])


def resolve_album(conn: sqlite3.Connection, name: str, album_artist_id: int) -> int:
    """
    Get or create an album by its identity: the album name together with its album artist. Two albums
    may share a name so long as their album artists differ.

    Tracks are written one at a time, so the lookup and the insert cannot race with another writer
    for the same album.
    """
    cursor = conn.execute(
        """
        SELECT albums.id
        FROM albums
        JOIN artists_albums ON artists_albums.album_id = albums.id
        WHERE albums.name = ? AND artists_albums.artist_id = ?
        ORDER BY albums.id
        LIMIT 1
        """,
        (name, album_artist_id),
    )
    if row := cursor.fetchone():
        return int(row["id"])

    cursor = conn.execute("INSERT INTO albums (name) VALUES (?) RETURNING id", (name,))
    album_id = int(cursor.fetchone()["id"])
    conn.execute(
        "INSERT INTO artists_albums (artist_id, album_id) VALUES (?, ?) ON CONFLICT DO NOTHING",
        (album_artist_id, album_id),
    )
    logger.debug(f"Created album {name} (album artist {album_artist_id}) as album {album_id}")
    return album_id


def upsert_track(c: Config, conn: sqlite3.Connection, tags: AudioTags) -> int:
    """
    Write a freshly read track into the catalog and return its ID. The caller guarantees the path has
    no track row, and should wrap the call in a transaction so that the track lands atomically.
    """
    cursor = conn.execute(
        """
        INSERT INTO tracks (name, path, last_modified, duration_seconds)
        VALUES (?, ?, ?, ?)
        RETURNING id
        """,
        (tags.title, tags.relative_path, tags.last_modified, tags.duration_seconds),
    )
    track_id = int(cursor.fetchone()["id"])

    art_id: int | None = None
    if tags.art is not None:
        art_id = store_art(c, conn, tags.art)
        conn.execute(
            "INSERT INTO tracks_art (track_id, art_id) VALUES (?, ?) ON CONFLICT DO NOTHING",
            (track_id, art_id),
        )

    artist_id = resolve_artist(conn, tags.artist)
    # A track has exactly one artist link; a second attempt is a no-op on the unique track_id.
    conn.execute(
        "INSERT INTO artists_tracks (artist_id, track_id) VALUES (?, ?) ON CONFLICT DO NOTHING",
        (artist_id, track_id),
    )
    if art_id is not None:
        conn.execute(
            "INSERT INTO artists_art (artist_id, art_id) VALUES (?, ?) ON CONFLICT DO NOTHING",
            (artist_id, art_id),
        )

    album_artist_id = resolve_artist(conn, tags.album_artist)
    album_id = resolve_album(conn, tags.album, album_artist_id)
    conn.execute(
        """
        INSERT INTO albums_tracks (album_id, track_id, track_number, disc_number)
        VALUES (?, ?, ?, ?)
        ON CONFLICT DO NOTHING
        """,
        (album_id, track_id, tags.track_number, tags.disc_number),
    )
    if art_id is not None:
        conn.execute(
            "INSERT INTO albums_art (album_id, art_id) VALUES (?, ?) ON CONFLICT DO NOTHING",
            (album_id, art_id),
        )

    logger.info(f"Added track {tags.relative_path} to the catalog as track {track_id}")
    return track_id


def delete_track(conn: sqlite3.Connection, track_id: int) -> None:
    """Delete a track. Its links cascade, taking any album or artist left without tracks along."""
    conn.execute("DELETE FROM tracks WHERE id = ?", (track_id,))


def track_exists(conn: sqlite3.Connection, relative_path: str) -> bool:
    cursor = conn.execute("SELECT EXISTS(SELECT 1 FROM tracks WHERE path = ?)", (relative_path,))
    return bool(cursor.fetchone()[0])


def list_track_states(conn: sqlite3.Connection) -> list[TrackState]:
    cursor = conn.execute("SELECT id, path, last_modified FROM tracks ORDER BY path")
    return [
        TrackState(id=row["id"], path=row["path"], last_modified=row["last_modified"])
        for row in cursor
    ]


def list_albums(conn: sqlite3.Connection) -> list[ListAlbum]:
    """List every album with its album artist and cover art, ordered by name."""
    cursor = conn.execute(
        """
        SELECT
            albums.id
          , albums.name
          , artists.name AS artist_name
          , (
                SELECT art.path
                FROM albums_art
                JOIN art ON art.id = albums_art.art_id
                WHERE albums_art.album_id = albums.id
                ORDER BY albums_art.art_id
                LIMIT 1
            ) AS art_path
        FROM albums
        JOIN artists_albums ON artists_albums.album_id = albums.id
        JOIN artists ON artists.id = artists_albums.artist_id
        ORDER BY albums.name, albums.id
        """
    )
    return [
        ListAlbum(
            id=row["id"],
            name=row["name"],
            artist_name=row["artist_name"],
            art_path=row["art_path"],
        )
        for row in cursor
    ]


def get_album(conn: sqlite3.Connection, album_id: int) -> Album | None:
    """Fetch an album with its tracks grouped by disc. Returns None if the album does not exist."""
    cursor = conn.execute(
        """
        SELECT
            albums.id
          , albums.name
          , artists.name AS album_artist_name
          , (
                SELECT art.path
                FROM albums_art
                JOIN art ON art.id = albums_art.art_id
                WHERE albums_art.album_id = albums.id
                ORDER BY albums_art.art_id
                LIMIT 1
            ) AS art_path
        FROM albums
        JOIN artists_albums ON artists_albums.album_id = albums.id
        JOIN artists ON artists.id = artists_albums.artist_id
        WHERE albums.id = ?
        """,
        (album_id,),
    )
    album_row = cursor.fetchone()
    if not album_row:
        return None

    cursor = conn.execute(
        """
        SELECT
            tracks.id
          , tracks.name
          , tracks.path
          , tracks.duration_seconds
          , albums_tracks.track_number
          , albums_tracks.disc_number
          , artists.name AS artist_name
          , (
                SELECT art.path
                FROM tracks_art
                JOIN art ON art.id = tracks_art.art_id
                WHERE tracks_art.track_id = tracks.id
                ORDER BY tracks_art.art_id
                LIMIT 1
            ) AS art_path
        FROM albums_tracks
        JOIN tracks ON tracks.id = albums_tracks.track_id
        JOIN artists_tracks ON artists_tracks.track_id = tracks.id
        JOIN artists ON artists.id = artists_tracks.artist_id
        WHERE albums_tracks.album_id = ?
        ORDER BY albums_tracks.disc_number, albums_tracks.track_number, tracks.path
        """,
        (album_id,),
    )
    # Rows arrive sorted by disc, so each disc's tracks are contiguous.
    discs: list[tuple[int, list[AlbumTrack]]] = []
    for row in cursor:
        if not discs or discs[-1][0] != row["disc_number"]:
            discs.append((row["disc_number"], []))
        discs[-1][1].append(
            AlbumTrack(
                id=row["id"],
                number=row["track_number"],
                artist=row["artist_name"],
                name=row["name"],
                path=row["path"],
                art_path=row["art_path"],
                duration_seconds=row["duration_seconds"],
            )
        )
    return Album(
        id=album_row["id"],
        name=album_row["name"],
        album_artist_name=album_row["album_artist_name"],
        art_path=album_row["art_path"],
        discs=tuple(AlbumDisc(number=n, tracks=tuple(tracks)) for n, tracks in discs),
    )

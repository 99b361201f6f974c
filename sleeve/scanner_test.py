import os
import sqlite3
import time

import pytest

from conftest import COVER_1, album_tags, make_flac, make_mp3, make_ogg
from sleeve.audiotags import UnreadableFileError
from sleeve.config import Config
from sleeve.database import connect
from sleeve.library import LibraryState
from sleeve.scanner import discover_new, reconcile_existing, walk_files


def _rows(conn: sqlite3.Connection, sql: str) -> list[tuple]:  # type: ignore[type-arg]
    return [tuple(r) for r in conn.execute(sql)]


def _count(conn: sqlite3.Connection, table: str) -> int:
    return int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])


def test_discover_new_same_album_name_different_album_artists(config: Config) -> None:
    make_flac(config.music_source_dir / "Alb" / "a.flac", album_tags("One", "A", "Alb", "A"))
    make_flac(config.music_source_dir / "Alb" / "b.flac", album_tags("Two", "B", "Alb", "B"))

    assert discover_new(config) == 2
    with connect(config) as conn:
        assert _rows(conn, "SELECT name, path FROM tracks ORDER BY path") == [
            ("One", "Alb/a.flac"),
            ("Two", "Alb/b.flac"),
        ]
        assert _rows(conn, "SELECT name FROM artists ORDER BY name") == [("A",), ("B",)]
        assert _rows(
            conn,
            """
            SELECT albums.name, artists.name
            FROM albums
            JOIN artists_albums ON artists_albums.album_id = albums.id
            JOIN artists ON artists.id = artists_albums.artist_id
            ORDER BY artists.name
            """,
        ) == [("Alb", "A"), ("Alb", "B")]


def test_discover_new_is_idempotent(config: Config) -> None:
    make_flac(config.music_source_dir / "Alb" / "a.flac", album_tags("One", "A", "Alb", "A"), picture=COVER_1)
    assert discover_new(config) == 1
    with connect(config) as conn:
        before = {t: _count(conn, t) for t in ["tracks", "artists", "albums", "art", "albums_art"]}

    assert discover_new(config) == 0
    with connect(config) as conn:
        after = {t: _count(conn, t) for t in ["tracks", "artists", "albums", "art", "albums_art"]}
    assert before == after
    assert before["art"] == 1


def test_discover_new_untagged_file(config: Config) -> None:
    make_mp3(config.music_source_dir / "a.mp3")
    assert discover_new(config) == 1
    with connect(config) as conn:
        assert _rows(conn, "SELECT name, path FROM tracks") == [("a.mp3", "a.mp3")]
        assert _rows(conn, "SELECT name FROM artists") == [("Unknown",)]
        assert _rows(conn, "SELECT name FROM albums") == [("Unknown",)]
        assert _rows(conn, "SELECT track_number, disc_number FROM albums_tracks") == [(0, 0)]


def test_discover_new_ignores_unsupported_files(config: Config) -> None:
    (config.music_source_dir / "notes.txt").write_text("hi")
    (config.music_source_dir / "cover.jpg").write_bytes(COVER_1)
    (config.music_source_dir / "song.wav").write_bytes(b"RIFF")
    assert discover_new(config) == 0
    with connect(config) as conn:
        assert _count(conn, "tracks") == 0


def test_discover_new_follows_symlinks(config: Config) -> None:
    elsewhere = config.music_source_dir.parent / "elsewhere"
    make_flac(elsewhere / "x.flac", album_tags("X", "A", "Alb", "A"))
    (config.music_source_dir / "linked").symlink_to(elsewhere, target_is_directory=True)
    (config.music_source_dir / "linked.flac").symlink_to(elsewhere / "x.flac")

    assert discover_new(config) == 2
    with connect(config) as conn:
        assert _rows(conn, "SELECT path FROM tracks ORDER BY path") == [
            ("linked.flac",),
            ("linked/x.flac",),
        ]


def test_walk_files_terminates_on_symlink_loop(config: Config) -> None:
    d = config.music_source_dir / "d"
    make_flac(d / "x.flac")
    (d / "loop").symlink_to(config.music_source_dir, target_is_directory=True)
    assert list(walk_files(config.music_source_dir)) == [d / "x.flac"]


def test_walk_files_is_sorted(config: Config) -> None:
    for name in ["b/2.flac", "a/1.flac", "c.flac", "b/1.flac"]:
        make_flac(config.music_source_dir / name)
    assert [str(p.relative_to(config.music_source_dir)) for p in walk_files(config.music_source_dir)] == [
        "c.flac",
        "a/1.flac",
        "b/1.flac",
        "b/2.flac",
    ]


def test_walk_files_missing_root(config: Config) -> None:
    with pytest.raises(UnreadableFileError):
        list(walk_files(config.music_source_dir / "nope"))


def test_discover_new_aborts_on_unreadable_file(config: Config) -> None:
    make_flac(config.music_source_dir / "a.flac", album_tags("One", "A", "Alb", "A"))
    (config.music_source_dir / "b.flac").write_bytes(b"garbage")
    make_flac(config.music_source_dir / "c.flac", album_tags("Three", "A", "Alb", "A"))

    with pytest.raises(UnreadableFileError):
        discover_new(config)
    # Files walked before the failure stay committed; files after it were never reached.
    with connect(config) as conn:
        assert _rows(conn, "SELECT path FROM tracks") == [("a.flac",)]


def test_reconcile_existing_deletes_removed_files(config: Config) -> None:
    make_flac(config.music_source_dir / "Alb" / "a.flac", album_tags("One", "A", "Alb", "A"), picture=COVER_1)
    make_flac(config.music_source_dir / "Other" / "b.flac", album_tags("Two", "B", "Other", "B"))
    discover_new(config)

    (config.music_source_dir / "Other" / "b.flac").unlink()
    reconcile_existing(config)
    with connect(config) as conn:
        assert _rows(conn, "SELECT path FROM tracks") == [("Alb/a.flac",)]
        assert _rows(conn, "SELECT name FROM albums") == [("Alb",)]
        assert _rows(conn, "SELECT name FROM artists") == [("A",)]
        assert _count(conn, "albums_tracks") == 1
        assert _count(conn, "artists_tracks") == 1

    (config.music_source_dir / "Alb" / "a.flac").unlink()
    reconcile_existing(config)
    with connect(config) as conn:
        for table in ["tracks", "albums", "artists", "albums_tracks", "tracks_art", "albums_art"]:
            assert _count(conn, table) == 0
        assert _count(conn, "art") == 1


def test_reconcile_existing_reingests_changed_files(config: Config) -> None:
    path = make_flac(config.music_source_dir / "a.flac", album_tags("Old", "A", "Alb", "A"))
    discover_new(config)

    make_flac(path, album_tags("New", "B", "Alb2", "B"))
    future = int(time.time()) + 60
    os.utime(path, (future, future))
    reconcile_existing(config)

    with connect(config) as conn:
        assert _rows(conn, "SELECT name, last_modified FROM tracks") == [("New", future)]
        assert _rows(conn, "SELECT name FROM albums") == [("Alb2",)]
        assert _rows(conn, "SELECT name FROM artists") == [("B",)]


def test_reconcile_existing_ignores_older_timestamps(config: Config) -> None:
    path = make_flac(config.music_source_dir / "a.flac", album_tags("Old", "A", "Alb", "A"))
    discover_new(config)

    make_flac(path, album_tags("New", "A", "Alb", "A"))
    past = int(time.time()) - 3600
    os.utime(path, (past, past))
    reconcile_existing(config)

    with connect(config) as conn:
        assert _rows(conn, "SELECT name FROM tracks") == [("Old",)]


def test_scan_marks_state_outdated(config: Config) -> None:
    state = LibraryState(max_cached_albums=4)
    state.get_listing(lambda: [])
    assert not state.listing_outdated

    discover_new(config, state)
    assert not state.listing_outdated

    make_flac(config.music_source_dir / "a.flac", album_tags("One", "A", "Alb", "A"))
    discover_new(config, state)
    assert state.listing_outdated

    state.get_listing(lambda: [])
    (config.music_source_dir / "a.flac").unlink()
    reconcile_existing(config, state)
    assert state.listing_outdated


def test_discover_new_sniffs_ogg_codec(config: Config) -> None:
    # Opus audio in an .ogg container is as common as Vorbis.
    make_ogg(config.music_source_dir / "song.ogg", codec="opus", tags=album_tags("Opus", "A", "Alb", "A"))
    make_ogg(config.music_source_dir / "tune.ogg", codec="vorbis", tags=album_tags("Vorbis", "A", "Alb", "A"))
    make_flac(config.music_source_dir / "z.flac", album_tags("Flac", "A", "Alb", "A"))

    assert discover_new(config) == 3
    with connect(config) as conn:
        assert _rows(conn, "SELECT name, path, duration_seconds FROM tracks ORDER BY path") == [
            ("Opus", "song.ogg", 3),
            ("Vorbis", "tune.ogg", 3),
            ("Flac", "z.flac", 3),
        ]

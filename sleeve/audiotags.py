"""
The audiotags module abstracts over tag reading for five different audio formats, exposing a single
normalized record for all audio files.

Tags in the wild are messy, so every field has a fallback: the catalog never sees a missing value.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import mutagen
import mutagen.flac
import mutagen.id3
import mutagen.mp3
import mutagen.mp4
import mutagen.oggopus
import mutagen.oggvorbis

from sleeve.common import SleeveExpectedError, strip_nulls
from sleeve.config import Config

logger = logging.getLogger(__name__)

SUPPORTED_AUDIO_EXTENSIONS = [
    ".mp3",
    ".m4a",
    ".ogg",
    ".opus",
    ".flac",
]

UNKNOWN = "Unknown"

# The picture type of a front cover, shared by ID3 APIC frames and FLAC picture blocks.
FRONT_COVER = 3


class UnsupportedFormatError(SleeveExpectedError):
    pass


class UnreadableFileError(SleeveExpectedError):
    pass


def is_supported_audio_file(p: Path) -> bool:
    return p.suffix.lower() in SUPPORTED_AUDIO_EXTENSIONS


def relative_track_path(c: Config, p: Path) -> str:
    """The path under which a track is stored in the catalog."""
    return os.path.relpath(p, c.music_source_dir)


@dataclass
class AudioTags:
    title: str
    artist: str
    album: str
    album_artist: str
    track_number: int
    disc_number: int
    duration_seconds: int
    # Raw bytes of the cover image, if any was found.
    art: bytes | None = field(repr=False)

    path: Path
    relative_path: str
    last_modified: float

    @classmethod
    def from_file(cls, c: Config, p: Path) -> AudioTags:
        """Read the tags of an audio file on disk."""
        ext = p.suffix.lower()
        if ext not in SUPPORTED_AUDIO_EXTENSIONS:
            raise UnsupportedFormatError(f"{p}: {p.suffix or 'no extension'} is not a supported filetype")
        relpath = relative_track_path(c, p)

        # Sniff the container rather than trusting the extension: an .ogg file may hold Vorbis or
        # Opus audio.
        try:
            last_modified = os.stat(p).st_mtime
            m = mutagen.File(p)  # type: ignore
        except mutagen.mp3.HeaderNotFoundError:
            m = _read_bare_id3(p)
        except (mutagen.MutagenError, OSError) as e:
            raise UnreadableFileError(f"Failed to read tags of {p}: {e}") from e
        if m is None:
            raise UnreadableFileError(f"Failed to read tags of {p}: no audio stream found")

        if isinstance(m, (mutagen.mp3.MP3, mutagen.id3.ID3)):
            # A bare ID3 tag stands in for an MP3 whose audio frames could not be found. It has no
            # stream info, so its duration is 0.
            t = m if isinstance(m, mutagen.id3.ID3) else m.tags
            title = _get_tag(t, ["TIT2"])
            artist = _get_tag(t, ["TPE1"])
            album = _get_tag(t, ["TALB"])
            album_artist = _get_tag(t, ["TPE2"])
            track_number = _parse_number(_get_tag(t, ["TRCK"]))
            disc_number = _parse_number(_get_tag(t, ["TPOS"]))
            duration_seconds = _length_seconds(m)
            art = None
            if t:
                for frame in t.getall("APIC"):
                    if frame.type == mutagen.id3.PictureType.COVER_FRONT:
                        art = frame.data
                        break
        elif isinstance(m, mutagen.mp4.MP4):
            title = _get_tag(m.tags, ["\xa9nam"])
            artist = _get_tag(m.tags, ["\xa9ART"])
            album = _get_tag(m.tags, ["\xa9alb"])
            album_artist = _get_tag(m.tags, ["aART"])
            track_number = _get_tuple_number(m.tags, "trkn")
            disc_number = _get_tuple_number(m.tags, "disk")
            duration_seconds = _length_seconds(m)
            # MP4 cover atoms do not record a picture type, so the first one is the front cover.
            art = None
            if m.tags and m.tags.get("covr"):
                art = bytes(m.tags["covr"][0])
        elif isinstance(m, mutagen.flac.FLAC):
            title = _get_tag(m.tags, ["title"])
            artist = _get_tag(m.tags, ["artist"])
            album = _get_tag(m.tags, ["album"])
            album_artist = _get_tag(m.tags, ["albumartist", "album artist"])
            track_number = _parse_number(_get_tag(m.tags, ["tracknumber"]))
            disc_number = _parse_number(_get_tag(m.tags, ["discnumber"]))
            duration_seconds = 0
            if m.info.sample_rate:
                duration_seconds = m.info.total_samples // m.info.sample_rate
            art = _first_front_cover(m.pictures)
        elif isinstance(m, (mutagen.oggvorbis.OggVorbis, mutagen.oggopus.OggOpus)):
            title = _get_tag(m.tags, ["title"])
            artist = _get_tag(m.tags, ["artist"])
            album = _get_tag(m.tags, ["album"])
            album_artist = _get_tag(m.tags, ["albumartist", "album artist"])
            track_number = _parse_number(_get_tag(m.tags, ["tracknumber"]))
            disc_number = _parse_number(_get_tag(m.tags, ["discnumber"]))
            duration_seconds = _length_seconds(m)
            art = _first_front_cover(_ogg_pictures(p, m.tags))
        else:
            raise UnsupportedFormatError(f"{p}: {type(m).__name__} streams are not supported")

        if art is None:
            art = find_directory_art(c, p.parent)

        return AudioTags(
            title=title or relpath,
            artist=artist or UNKNOWN,
            album=album or UNKNOWN,
            album_artist=album_artist or UNKNOWN,
            track_number=track_number,
            disc_number=disc_number,
            duration_seconds=duration_seconds,
            art=art,
            path=p,
            relative_path=relpath,
            last_modified=last_modified,
        )


def find_directory_art(c: Config, directory: Path) -> bytes | None:
    """
    Fall back to an image file beside the track. Conventionally named images (cover.jpg,
    folder.png, ...) win; otherwise the first image by name.
    """
    try:
        images = sorted(
            f
            for f in directory.iterdir()
            if f.suffix.lower().removeprefix(".") in c.valid_art_exts and f.is_file()
        )
    except OSError as e:
        raise UnreadableFileError(f"Failed to list {directory} for cover art: {e}") from e
    if not images:
        return None

    chosen = images[0]
    by_name = {f.name.lower(): f for f in images}
    for name in c.valid_cover_arts:
        if name in by_name:
            chosen = by_name[name]
            break
    logger.debug(f"Using cover art file {chosen} for tracks in {directory}")
    try:
        return chosen.read_bytes()
    except OSError as e:
        raise UnreadableFileError(f"Failed to read cover art {chosen}: {e}") from e


def _read_bare_id3(p: Path) -> mutagen.id3.ID3:
    """
    Read the ID3 tag of an MP3 file that has no syncable MPEG frame. A file with neither audio nor a
    tag has nothing to catalog and is unreadable.
    """
    logger.warning(f"No MPEG audio frames found in {p}, reading its ID3 tag alone")
    try:
        return mutagen.id3.ID3(p)
    except mutagen.id3.ID3NoHeaderError as e:
        raise UnreadableFileError(f"Failed to read tags of {p}: no audio frames and no ID3 tag") from e
    except (mutagen.MutagenError, OSError) as e:
        raise UnreadableFileError(f"Failed to read tags of {p}: {e}") from e


def _get_tag(t: Any, keys: list[str]) -> str | None:
    """Fetch the first present key. Multiple values are joined with a comma."""
    if not t:
        return None
    for k in keys:
        try:
            raw_values = t[k].text if isinstance(t, mutagen.id3.ID3) else t[k]
        except (KeyError, ValueError):
            continue
        values = [strip_nulls(_stringify(v)).strip() for v in raw_values]
        values = [v for v in values if v]
        if values:
            return ", ".join(values)
    return None


def _stringify(val: Any) -> str:
    if isinstance(val, str):
        return val
    if isinstance(val, bytes):
        return val.decode("utf-8", "replace")
    if isinstance(val, mutagen.id3.ID3TimeStamp):
        return val.text
    return str(val)


def _get_tuple_number(t: Any, key: str) -> int:
    if not t:
        return 0
    try:
        return int(t[key][0][0])
    except (KeyError, IndexError, TypeError, ValueError):
        return 0


def _parse_number(x: str | None) -> int:
    """Parse a track or disc number. ID3 and some Vorbis taggers write them as `no/total`."""
    if not x:
        return 0
    try:
        return int(x.split("/", 1)[0].strip())
    except ValueError:
        return 0


def _length_seconds(m: Any) -> int:
    length = getattr(getattr(m, "info", None), "length", None)
    if not length:
        return 0
    return int(length)


def _first_front_cover(pictures: list[mutagen.flac.Picture]) -> bytes | None:
    for pic in pictures:
        if pic.type == FRONT_COVER:
            return pic.data
    return None


def _ogg_pictures(p: Path, t: Any) -> list[mutagen.flac.Picture]:
    """Ogg files store FLAC picture blocks as base64 in the metadata_block_picture comment."""
    if not t:
        return []
    pictures: list[mutagen.flac.Picture] = []
    for raw in t.get("metadata_block_picture", []):
        try:
            pictures.append(mutagen.flac.Picture(base64.b64decode(raw)))
        except (binascii.Error, mutagen.flac.error) as e:
            logger.warning(f"Ignoring malformed embedded picture in {p}: {e}")
    return pictures

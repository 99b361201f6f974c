import base64
import logging
import struct
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import mutagen
import mutagen.flac
import mutagen.id3
import mutagen.mp4
import mutagen.ogg
import pytest
from click.testing import CliRunner

from sleeve.config import Config
from sleeve.database import maybe_invalidate_database

logger = logging.getLogger(__name__)

# Not a real image, but nothing in the catalog decodes image bytes.
COVER_1 = b"\x89PNG\r\n\x1a\nfirst cover"
COVER_2 = b"\x89PNG\r\n\x1a\nsecond cover"

# An MPEG-1 Layer III frame header (128kbps, 44.1kHz, stereo) with a zeroed payload: 417 bytes total.
MP3_FRAME = b"\xff\xfb\x90\x00" + b"\x00" * 413


@pytest.fixture(autouse=True)
def debug_logging() -> None:
    logging.getLogger().setLevel(logging.DEBUG)


@pytest.fixture()
def isolated_dir() -> Iterator[Path]:
    with CliRunner().isolated_filesystem():
        yield Path.cwd()


@pytest.fixture()
def config(isolated_dir: Path) -> Config:
    cache_dir = isolated_dir / "cache"
    cache_dir.mkdir()
    art_dir = isolated_dir / "art"
    art_dir.mkdir()
    music_source_dir = isolated_dir / "source"
    music_source_dir.mkdir()

    c = Config(
        music_source_dir=music_source_dir,
        art_dir=art_dir,
        cache_dir=cache_dir,
        cover_art_stems=["cover", "folder", "front"],
        valid_art_exts=["jpg", "jpeg", "png"],
        max_cached_albums=16,
    )
    maybe_invalidate_database(c)
    return c


def make_flac(
    path: Path,
    tags: dict[str, str | list[str]] | None = None,
    picture: bytes | None = None,
    picture_type: int = 3,
    seconds: int = 3,
) -> Path:
    """
    Write a FLAC file that holds only a STREAMINFO block (no audio frames), then tag it. That is all
    the tag reader looks at.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    sample_rate = 44100
    streaminfo = (
        struct.pack(">HH", 4096, 4096)
        # min/max frame size, unknown.
        + b"\x00" * 6
        # sample rate (20 bits) | channels - 1 (3 bits) | bits per sample - 1 (5 bits) | samples (36 bits)
        + struct.pack(">Q", (sample_rate << 44) | (1 << 41) | (15 << 36) | (seconds * sample_rate))
        # MD5 of the audio, unknown.
        + b"\x00" * 16
    )
    with path.open("wb") as fp:
        fp.write(b"fLaC")
        # Last metadata block, type STREAMINFO.
        fp.write(b"\x80" + len(streaminfo).to_bytes(3, "big"))
        fp.write(streaminfo)

    if tags or picture is not None:
        f = mutagen.flac.FLAC(path)
        for k, v in (tags or {}).items():
            f[k] = v
        if picture is not None:
            pic = mutagen.flac.Picture()
            pic.type = picture_type
            pic.mime = "image/png"
            pic.data = picture
            f.add_picture(pic)
        f.save()
    return path


def make_mp3(path: Path, frames: list[mutagen.id3.Frame] | None = None) -> Path:
    """Write a short constant bitrate MP3 of silent frames, with an ID3 tag if frames are passed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as fp:
        fp.write(MP3_FRAME * 40)
    if frames:
        tag = mutagen.id3.ID3()
        for frame in frames:
            tag.add(frame)
        tag.save(path)
    return path


def make_ogg(
    path: Path,
    codec: str = "vorbis",
    tags: dict[str, str | list[str]] | None = None,
    pictures: list[tuple[int, bytes]] | None = None,
    seconds: int = 3,
) -> Path:
    """
    Write an Ogg stream of Vorbis or Opus headers followed by a single final page whose granule
    position sets the duration, then tag it. Pictures are (picture type, data) pairs stored the way
    Ogg taggers store them: base64 FLAC picture blocks in metadata_block_picture.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    empty_comment = struct.pack("<I", 0) + struct.pack("<I", 0)
    if codec == "vorbis":
        sample_rate = 44100
        # ID header: version, channels, sample rate, max/nominal/min bitrate, block sizes, framing.
        head = b"\x01vorbis" + struct.pack("<IBI3iBB", 0, 2, sample_rate, 0, 128000, 0, 0xB8, 1)
        # The comment header carries a framing bit; the setup header follows in the same page.
        header_packets = [b"\x03vorbis" + empty_comment + b"\x01", b"\x05vorbis"]
    else:
        # Opus granule positions always count 48kHz samples.
        sample_rate = 48000
        # Version, channels, pre-skip, input sample rate, output gain, channel mapping family.
        head = b"OpusHead" + struct.pack("<BBHIhB", 1, 2, 0, 48000, 0, 0)
        header_packets = [b"OpusTags" + empty_comment]

    pages = []
    for sequence, packets in enumerate([[head], header_packets, [b"\x00"]]):
        page = mutagen.ogg.OggPage()
        page.serial = 1
        page.sequence = sequence
        page.packets = packets
        pages.append(page)
    pages[0].first = True
    pages[-1].last = True
    pages[-1].position = seconds * sample_rate
    with path.open("wb") as fp:
        for page in pages:
            fp.write(page.write())

    if tags or pictures:
        f = mutagen.File(path)
        for k, v in (tags or {}).items():
            f[k] = v
        if pictures:
            blocks = []
            for picture_type, data in pictures:
                pic = mutagen.flac.Picture()
                pic.type = picture_type
                pic.mime = "image/png"
                pic.data = data
                blocks.append(base64.b64encode(pic.write()).decode("ascii"))
            f["metadata_block_picture"] = blocks
        f.save()
    return path


def _mp4_atom(name: bytes, payload: bytes) -> bytes:
    return struct.pack(">I", 8 + len(payload)) + name + payload


def make_m4a(path: Path, tags: dict[str, Any] | None = None, seconds: int = 3) -> Path:
    """
    Write an MP4 file with no audio track, only a movie header that records the duration, then tag
    it. Tags are raw MP4 atom names mapped to values, as mutagen takes them.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    timescale = 1000
    mvhd = (
        # version and flags, creation and modification times
        b"\x00" * 12
        + struct.pack(">II", timescale, seconds * timescale)
        # rate, volume, reserved, matrix, pre-defined, next track ID
        + struct.pack(">IH", 0x00010000, 0x0100)
        + b"\x00" * 10
        + b"\x00" * 36
        + b"\x00" * 24
        + struct.pack(">I", 1)
    )
    with path.open("wb") as fp:
        fp.write(_mp4_atom(b"ftyp", b"M4A " + struct.pack(">I", 0) + b"M4A mp42isom"))
        fp.write(_mp4_atom(b"moov", _mp4_atom(b"mvhd", mvhd)))

    if tags:
        f = mutagen.mp4.MP4(path)
        if f.tags is None:
            f.add_tags()
        for k, v in tags.items():
            f.tags[k] = v
        f.save()
    return path


def album_tags(title: str, artist: str, album: str, albumartist: str, tracknumber: str = "1") -> dict[str, str | list[str]]:
    return {
        "title": title,
        "artist": artist,
        "album": album,
        "albumartist": albumartist,
        "tracknumber": tracknumber,
        "discnumber": "1",
    }

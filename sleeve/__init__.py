from sleeve.artstore import StorageUnavailableError, store_art
from sleeve.audiotags import (
    SUPPORTED_AUDIO_EXTENSIONS,
    AudioTags,
    UnreadableFileError,
    UnsupportedFormatError,
)
from sleeve.catalog import (
    Album,
    AlbumDisc,
    AlbumTrack,
    ListAlbum,
    resolve_album,
    resolve_artist,
    upsert_track,
)
from sleeve.common import (
    VERSION,
    SleeveError,
    SleeveExpectedError,
    initialize_logging,
)
from sleeve.config import Config
from sleeve.database import StoreError, connect, maybe_invalidate_database, transaction
from sleeve.library import (
    AlbumDoesNotExistError,
    AlreadyRunningError,
    Library,
    LibraryState,
    dump_album,
    dump_albums,
)
from sleeve.scanner import discover_new, reconcile_existing

__all__ = [
    # Plumbing
    "initialize_logging",
    "VERSION",
    # Errors
    "SleeveError",
    "SleeveExpectedError",
    "UnsupportedFormatError",
    "UnreadableFileError",
    "StorageUnavailableError",
    "AlreadyRunningError",
    "AlbumDoesNotExistError",
    "StoreError",
    # Configuration
    "Config",
    # Database
    "connect",
    "transaction",
    "maybe_invalidate_database",
    # Tagging
    "AudioTags",
    "SUPPORTED_AUDIO_EXTENSIONS",
    # Catalog
    "store_art",
    "resolve_artist",
    "resolve_album",
    "upsert_track",
    # Reconciliation
    "discover_new",
    "reconcile_existing",
    "Library",
    "LibraryState",
    # Snapshots
    "ListAlbum",
    "Album",
    "AlbumDisc",
    "AlbumTrack",
    "dump_albums",
    "dump_album",
]

initialize_logging(__name__)

"""
The config module provides the configuration schema and parsing logic.

Every invalid value produces an error naming the offending key and the configuration file, and
unrecognized keys are reported as warnings.
"""

from __future__ import annotations

import functools
import logging
import os
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import appdirs
import tomllib

from sleeve.common import SleeveExpectedError

XDG_CONFIG_SLEEVE = Path(appdirs.user_config_dir("sleeve"))
CONFIG_PATH = XDG_CONFIG_SLEEVE / "config.toml"

XDG_CACHE_SLEEVE = Path(appdirs.user_cache_dir("sleeve"))

logger = logging.getLogger(__name__)


class ConfigNotFoundError(SleeveExpectedError):
    pass


class ConfigDecodeError(SleeveExpectedError):
    pass


class MissingConfigKeyError(SleeveExpectedError):
    pass


class InvalidConfigValueError(SleeveExpectedError, ValueError):
    pass


def _expand_path(x: Any) -> Path:
    if not isinstance(x, str):
        raise TypeError(f"must be a path string: got {type(x)}")
    return Path(os.path.expandvars(x)).expanduser()


@dataclass(frozen=True)
class Config:
    music_source_dir: Path
    art_dir: Path
    cache_dir: Path

    # Stems and extensions of image files that count as a directory's cover art. Stems are matched
    # before any other image in the directory is considered.
    cover_art_stems: list[str]
    valid_art_exts: list[str]

    # Number of per-album snapshots held in memory between invalidations.
    max_cached_albums: int

    @classmethod
    def parse(cls, config_path_override: Path | None = None) -> Config:
        # As we parse, delete consumed values from the data dictionary. If any are left over at the
        # end of the config, warn that unknown config keys were found.
        cfgpath = config_path_override or CONFIG_PATH
        try:
            with cfgpath.open("r") as fp:
                data = tomllib.loads(fp.read())
        except FileNotFoundError as e:
            raise ConfigNotFoundError(f"Configuration file not found ({cfgpath})") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigDecodeError(
                f"Failed to decode configuration file: invalid TOML: {e}"
            ) from e

        try:
            music_source_dir = _expand_path(data["music_source_dir"])
            del data["music_source_dir"]
        except KeyError as e:
            raise MissingConfigKeyError(
                f"Missing key music_source_dir in configuration file ({cfgpath})"
            ) from e
        except (ValueError, TypeError) as e:
            raise InvalidConfigValueError(
                f"Invalid value for music_source_dir in configuration file ({cfgpath}): must be a path"
            ) from e

        try:
            cache_dir = _expand_path(data["cache_dir"])
            del data["cache_dir"]
        except KeyError:
            cache_dir = XDG_CACHE_SLEEVE
        except (TypeError, ValueError) as e:
            raise InvalidConfigValueError(
                f"Invalid value for cache_dir in configuration file ({cfgpath}): must be a path"
            ) from e
        cache_dir.mkdir(parents=True, exist_ok=True)

        # The art directory is not created here: a missing art directory must surface as a storage
        # error when art is first written, not be papered over.
        try:
            art_dir = _expand_path(data["art_dir"])
            del data["art_dir"]
        except KeyError:
            art_dir = cache_dir / "art"
            art_dir.mkdir(exist_ok=True)
        except (TypeError, ValueError) as e:
            raise InvalidConfigValueError(
                f"Invalid value for art_dir in configuration file ({cfgpath}): must be a path"
            ) from e

        try:
            cover_art_stems = data["cover_art_stems"]
            del data["cover_art_stems"]
            if not isinstance(cover_art_stems, list):
                raise ValueError(f"Must be a list[str]: got {type(cover_art_stems)}")
            for s in cover_art_stems:
                if not isinstance(s, str):
                    raise ValueError(f"Each cover art stem must be of type str: got {type(s)}")
        except KeyError:
            cover_art_stems = ["cover", "folder", "front"]
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid value for cover_art_stems in configuration file ({cfgpath}): {e}"
            ) from e

        try:
            valid_art_exts = data["valid_art_exts"]
            del data["valid_art_exts"]
            if not isinstance(valid_art_exts, list):
                raise ValueError(f"Must be a list[str]: got {type(valid_art_exts)}")
            for s in valid_art_exts:
                if not isinstance(s, str):
                    raise ValueError(f"Each art extension must be of type str: got {type(s)}")
        except KeyError:
            valid_art_exts = ["jpg", "jpeg", "png"]
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid value for valid_art_exts in configuration file ({cfgpath}): {e}"
            ) from e
        cover_art_stems = [x.lower() for x in cover_art_stems]
        valid_art_exts = [x.lower() for x in valid_art_exts]

        try:
            max_cached_albums = data["max_cached_albums"]
            del data["max_cached_albums"]
            if (
                not isinstance(max_cached_albums, int)
                or isinstance(max_cached_albums, bool)
                or max_cached_albums <= 0
            ):
                raise ValueError(f"must be a positive integer: got {max_cached_albums}")
        except KeyError:
            max_cached_albums = 512
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid value for max_cached_albums in configuration file ({cfgpath}): {e}"
            ) from e

        if data:
            unrecognized_accessors: list[str] = []
            # Do a DFS over the data keys to assemble the map of unknown keys. State is a tuple of
            # ("accessor", node).
            dfs_state: deque[tuple[str, Any]] = deque([("", data)])
            while dfs_state:
                accessor, node = dfs_state.pop()
                if isinstance(node, dict):
                    for k, v in node.items():
                        child_accessor = k if not accessor else f"{accessor}.{k}"
                        dfs_state.append((child_accessor, v))
                    continue
                unrecognized_accessors.append(accessor)
            logger.warning(
                f"Unrecognized options found in configuration file: {', '.join(unrecognized_accessors)}"
            )

        return Config(
            music_source_dir=music_source_dir,
            art_dir=art_dir,
            cache_dir=cache_dir,
            cover_art_stems=cover_art_stems,
            valid_art_exts=valid_art_exts,
            max_cached_albums=max_cached_albums,
        )

    @functools.cached_property
    def valid_cover_arts(self) -> list[str]:
        return [s + "." + e for s in self.cover_art_stems for e in self.valid_art_exts]

    @functools.cached_property
    def catalog_database_path(self) -> Path:
        return self.cache_dir / "catalog.sqlite3"

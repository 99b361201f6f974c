"""
The cli module defines sleeve's CLI interface. It does not have any domain logic of its own. It is
dedicated to parsing, resolving arguments, and delegating to the appropriate module.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import click

from sleeve.config import Config
from sleeve.database import maybe_invalidate_database

logger = logging.getLogger(__name__)


@dataclass
class Context:
    config: Config


# fmt: off
@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Emit verbose logging.")
@click.option("--config", "-c", type=click.Path(path_type=Path), help="Override the config file location.")
@click.pass_context
# fmt: on
def cli(cc: click.Context, verbose: bool, config: Path | None = None) -> None:
    """Index a music directory into a catalog of artists, albums, and tracks."""
    cc.obj = Context(
        config=Config.parse(config_path_override=config),
    )
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.getLogger("sleeve").setLevel(logging.DEBUG)
    maybe_invalidate_database(cc.obj.config)


@cli.command()
@click.pass_obj
def reconcile(ctx: Context) -> None:
    """Synchronize the catalog with new, changed, and removed files."""
    from sleeve.library import Library

    with Library(ctx.config) as library:
        library.reconcile().result()


@cli.command()
@click.pass_obj
def rebuild(ctx: Context) -> None:
    """Empty the catalog and rebuild it from the music directory."""
    from sleeve.library import Library

    with Library(ctx.config) as library:
        library.rebuild().result()


@cli.group()
def albums() -> None:
    """Read albums from the catalog."""


@albums.command(name="list")
@click.pass_obj
def list_(ctx: Context) -> None:
    """Print all albums (in JSON)."""
    from sleeve.library import Library, dump_albums

    with Library(ctx.config) as library:
        click.echo(dump_albums(library))


@albums.command(name="print")
@click.argument("album_id", type=int, nargs=1)
@click.pass_obj
def print1(ctx: Context, album_id: int) -> None:
    """Print an album and its tracks by disc (in JSON)."""
    from sleeve.library import Library, dump_album

    with Library(ctx.config) as library:
        click.echo(dump_album(library, album_id))

import sys

import click

from sleeve.cli import cli
from sleeve.common import SleeveExpectedError


def main() -> None:
    try:
        cli()
    except SleeveExpectedError as e:
        click.secho(f"{e.__class__.__module__}.{e.__class__.__name__}: ", fg="red", nl=False)
        click.secho(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()

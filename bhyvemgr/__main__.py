"""Module entrypoint for ``python -m bhyvemgr``."""

import sys

from bhyvemgr import cli

if __name__ == "__main__":
    sys.exit(cli.main())

"""Entry point for ``python -m panel_updater``."""

import sys

from panel_updater.cli import main

if __name__ == "__main__":
    sys.exit(main())

"""Entry point for ``python -m kpiscore``."""

import sys

from kpiscore.cli import main

sys.exit(main())

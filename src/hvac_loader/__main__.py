"""Allows ``python -m hvac_loader BUCKET KEY ...``."""

import sys

from .cli import main

sys.exit(main())

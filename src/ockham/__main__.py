"""Allow ``python -m ockham``."""

import sys

from ockham.cli import main

sys.exit(main())

"""Allow ``python -m enhance_ticket``."""

import sys

from enhance_ticket.cli import main

sys.exit(main())

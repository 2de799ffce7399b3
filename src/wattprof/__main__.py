"""Allow ``python -m wattprof script.py``."""

from wattprof.cli import main

raise SystemExit(main())

"""Allow ``python -m sitewright``."""

from .app import main

raise SystemExit(main())

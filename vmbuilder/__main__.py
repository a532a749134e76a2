"""Allow ``python -m vmbuilder``."""

from vmbuilder.cli import main

raise SystemExit(main())

"""Allow ``python -m opsdeck``."""

from .entrypoint import main

raise SystemExit(main())

"""Allow ``python -m vmlab``; guests re-enter through this after the chroot."""

from .cli import main

raise SystemExit(main())

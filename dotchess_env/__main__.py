from __future__ import annotations

import sys

from dotchess_env.cli import main

if __name__ == "__main__":
    sys.exit(main())

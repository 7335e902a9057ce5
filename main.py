#!/usr/bin/env python3
"""ls-session - main entry point.

Equivalent to the installed ``ls-session`` command::

    python main.py --config config/session.yaml --resync
"""

import sys

from ls_session.cli import main

if __name__ == "__main__":
    sys.exit(main())

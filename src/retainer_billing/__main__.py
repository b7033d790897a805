"""Entry point for running the command line tools."""

import sys

from retainer_billing.cli import main

if __name__ == "__main__":
    sys.exit(main())

"""CLI entry point for umrgen.cli module.

Enables execution via: python -m umrgen.cli --tier pro
"""

from umrgen.cli.issue_token import main

if __name__ == "__main__":
    raise SystemExit(main())

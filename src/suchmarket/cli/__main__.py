"""CLI entry point for suchmarket.cli module.

Enables execution via: python -m suchmarket.cli (same as python -m suchmarket.cli.retry_failed)
"""

from suchmarket.cli.retry_failed import main

if __name__ == "__main__":
    main()

"""CLI entry point for mjrelay.cli module.

Enables execution via: python -m mjrelay.cli
"""

from mjrelay.cli.create_account import main

if __name__ == "__main__":
    main()

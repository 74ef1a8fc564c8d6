"""CLI entry point for target-encode package."""

import sys


def main():
    """Entry point for target-encode command."""
    from target_encode.core.main import main as run
    sys.exit(run())


if __name__ == "__main__":
    main()

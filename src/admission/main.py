"""Main entry point for the workshop admission service."""

import logging

from admission.cli import cli
from admission.config import get_settings


def main() -> None:
    """Main entry point."""
    settings = get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    cli(obj={})


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Command-line utility for administrative tasks.

Usage:
    python manage.py help
    python manage.py migrate
    python manage.py loaddata products customers
"""
import sys

from catalog.core.config import settings
from catalog.core.logging import setup_logging
from catalog.management.base import main


def run() -> None:
    setup_logging(level=settings.log_level, json_format=False, stream=sys.stderr)
    sys.exit(main(sys.argv))


if __name__ == "__main__":
    run()

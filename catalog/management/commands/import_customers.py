"""Bulk import customers from a CSV file.

Expected columns: ``first_name``, ``last_name``, ``email`` and optionally
``phone`` and ``city``. Rows whose email already exists, or repeats an
earlier row, are skipped; rows failing validation are reported and skipped.
"""
from pathlib import Path

import pandas as pd
from sqlalchemy import func, select

from catalog.core.exceptions import CommandError
from catalog.core.logging import LogTimer, get_logger
from catalog.domain.models import Customer
from catalog.infrastructure.database import session_scope
from catalog.management.base import BaseCommand
from catalog.services.forms import CustomerForm

logger = get_logger(__name__)

REQUIRED_COLUMNS = ("first_name", "last_name", "email")
OPTIONAL_COLUMNS = ("phone", "city")


def read_customers_csv(path: Path) -> pd.DataFrame:
    """Load the CSV with every column as text and blanks as empty strings.

    Raises:
        CommandError: If the file is missing, empty, unparseable or lacks a
            required column
    """
    if not path.exists():
        raise CommandError(f"File not found: {path}")

    try:
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError:
        raise CommandError(f"File is empty: {path}") from None
    except pd.errors.ParserError as e:
        raise CommandError(f"Unable to parse {path}: {e}") from None
    df.columns = [column.strip().lower() for column in df.columns]

    missing = [column for column in REQUIRED_COLUMNS if column not in df.columns]
    if missing:
        raise CommandError(f"Missing required column(s): {', '.join(missing)}")

    for column in OPTIONAL_COLUMNS:
        if column not in df.columns:
            df[column] = ""

    df = df[list(REQUIRED_COLUMNS + OPTIONAL_COLUMNS)]
    return df.apply(lambda column: column.str.strip())


class Command(BaseCommand):
    help = "Imports customers from a CSV file, skipping emails that already exist."

    def add_arguments(self, parser):
        parser.add_argument("csv_path", help="Path to the CSV file.")
        parser.add_argument(
            "--dry-run", action="store_true",
            help="Validate and report without writing to the database.",
        )

    def handle(self, *args, **options):
        df = read_customers_csv(Path(options["csv_path"]))
        dry_run = options.get("dry_run", False)
        verbosity = options.get("verbosity", 1)

        created = skipped = invalid = 0
        with LogTimer(logger, "import_customers"), session_scope() as session:
            existing = set(session.execute(select(func.lower(Customer.email))).scalars())

            for line, row in enumerate(df.to_dict(orient="records"), start=2):
                email = row["email"].lower()
                if email in existing:
                    skipped += 1
                    if verbosity > 1:
                        self.write(f"[SKIP] line {line}: {email} already exists")
                    continue

                form = CustomerForm(row)
                if not form.is_valid():
                    invalid += 1
                    errors = "; ".join(
                        f"{field}: {' '.join(messages)}" for field, messages in form.errors.items()
                    )
                    self.stderr.write(f"[WARN] line {line}: {errors}\n")
                    continue

                existing.add(email)
                created += 1
                if not dry_run:
                    form.save(session=session, commit=False)

            if dry_run:
                session.rollback()

        prefix = "[DRY RUN] Would import" if dry_run else "[OK] Imported"
        if verbosity:
            self.write(f"{prefix} {created} customer(s); skipped {skipped} existing, {invalid} invalid")
        logger.info(
            f"Customer import finished: {created} created, {skipped} skipped, {invalid} invalid",
            extra={"command": "import_customers"}
        )

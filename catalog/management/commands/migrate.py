"""Create every table that does not exist yet."""
from sqlalchemy import inspect

from catalog.core.exceptions import CommandError
from catalog.domain.models import Base
from catalog.infrastructure.database import create_all, get_engine, init_db
from catalog.management.base import BaseCommand


class Command(BaseCommand):
    help = "Creates the database tables for every model."

    def add_arguments(self, parser):
        parser.add_argument(
            "--database-url",
            help="SQLAlchemy URL to migrate instead of DATABASE_URL.",
        )

    def handle(self, *args, **options):
        if options.get("database_url"):
            init_db(options["database_url"])

        engine = get_engine()
        try:
            existing = set(inspect(engine).get_table_names())
            create_all()
        except Exception as e:
            raise CommandError(f"Migration failed: {e}") from e

        created = [table.name for table in Base.metadata.sorted_tables if table.name not in existing]
        verbosity = options.get("verbosity", 1)
        if not created:
            if verbosity:
                self.write("No migrations to apply.")
            return
        for name in created:
            if verbosity:
                self.write(f"[OK] Created table {name}")

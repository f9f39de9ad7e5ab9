"""Install fixtures into the database."""
from catalog.core.exceptions import CommandError, FixtureError
from catalog.infrastructure.database import session_scope
from catalog.management.base import BaseCommand
from catalog.services.fixtures import load_fixtures


class Command(BaseCommand):
    help = "Installs the named fixture(s) in the database."

    def add_arguments(self, parser):
        parser.add_argument("args", metavar="fixture", nargs="+", help="Fixture labels.")
        parser.add_argument(
            "-i", "--ignorenonexistent", action="store_true", dest="ignore",
            help="Ignores entries in the serialized data for fields that do not currently exist on the model.",
        )
        parser.add_argument(
            "-e", "--exclude", action="append", default=[],
            help="An app_label or app_label.ModelName to exclude. Can be used multiple times.",
        )

    def handle(self, *fixture_labels, **options):
        try:
            with session_scope() as session:
                result = load_fixtures(
                    session,
                    fixture_labels,
                    ignore_missing_fields=options.get("ignore", False),
                    exclude=options.get("exclude") or (),
                )
        except FixtureError as e:
            raise CommandError(str(e)) from e

        if options.get("verbosity", 1):
            self.write(
                f"Installed {result.objects} object(s) from {len(result.fixtures)} fixture(s)"
            )
        return None

"""Remove all data from the database, keeping the tables."""
from catalog.core.exceptions import CommandError
from catalog.infrastructure.database import flush_data
from catalog.management.base import BaseCommand


class Command(BaseCommand):
    help = (
        "Removes ALL DATA from the database. The tables themselves are kept, "
        "so the schema does not need to be recreated."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--noinput", "--no-input", action="store_false", dest="interactive",
            help="Do NOT prompt the user for input of any kind.",
        )

    def confirm(self) -> bool:
        answer = input(
            "You have requested a flush of the database.\n"
            "This will IRREVERSIBLY DESTROY all data currently in the database.\n"
            "Are you sure you want to do this?\n\n"
            "    Type 'yes' to continue, or 'no' to cancel: "
        )
        return answer.strip().lower() == "yes"

    def handle(self, *args, **options):
        if options.get("interactive", True) and not self.confirm():
            self.write("Flush cancelled.")
            return

        try:
            tables = flush_data()
        except Exception as e:
            raise CommandError(
                f"Database couldn't be flushed. Possible reasons:\n"
                f"  * The database isn't running or isn't configured correctly.\n"
                f"  * At least one of the expected database tables doesn't exist.\n"
                f"The full error: {e}"
            ) from e

        if options.get("verbosity", 1):
            self.write(f"[OK] Flushed {tables} tables")

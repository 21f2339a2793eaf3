from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from nebenkosten.exceptions import NebenkostenError, ValidationConflict
from nebenkosten.services.maintenance import MaintenanceService


class Command(BaseCommand):
    help = "Legt das Musterhaus „Musterstraße 1“ mit Beispieldaten für ein Abrechnungsjahr an."

    def add_arguments(self, parser):
        parser.add_argument(
            "--jahr",
            type=int,
            help="Abrechnungsjahr (Default: Vorjahr).",
        )

    def handle(self, *args, **options):
        year = options.get("jahr") or timezone.localdate().year - 1
        try:
            prop = MaintenanceService().create_sample_property(year)
        except ValidationConflict as exc:
            raise CommandError(" ".join(exc.messages)) from exc
        except NebenkostenError as exc:
            raise CommandError(str(exc)) from exc
        self.stdout.write(self.style.SUCCESS(f"Musterhaus angelegt: {prop} (ID {prop.pk})."))

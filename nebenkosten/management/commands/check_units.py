from django.core.management.base import BaseCommand, CommandError

from nebenkosten.exceptions import NotFound
from nebenkosten.services.unit_reconciliation import UnitReconciliationService


class Command(BaseCommand):
    help = "Prüft Wohnungsanzahl und Gesamtfläche einer Hausabrechnung gegen die angelegten Wohnungen."

    def add_arguments(self, parser):
        parser.add_argument(
            "--liegenschaft",
            type=int,
            required=True,
            help="ID der zu prüfenden Hausabrechnung.",
        )

    def handle(self, *args, **options):
        try:
            result = UnitReconciliationService().validate(options["liegenschaft"])
        except NotFound as exc:
            raise CommandError(str(exc)) from exc

        if not result.success:
            raise CommandError(result.error_message)
        if result.success_message:
            self.stdout.write(self.style.SUCCESS(result.success_message))
        else:
            self.stdout.write("Keine Sollwerte hinterlegt, nichts zu prüfen.")

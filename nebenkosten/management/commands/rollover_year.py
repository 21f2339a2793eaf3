from django.core.management.base import BaseCommand, CommandError

from nebenkosten.exceptions import NebenkostenError, NotFound, ValidationConflict
from nebenkosten.services.rollover import RolloverService


class Command(BaseCommand):
    help = "Führt den Jahreswechsel für eine Hausabrechnung durch (legt das Folgejahr an)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--liegenschaft",
            type=int,
            required=True,
            help="ID der Hausabrechnung, deren Folgejahr angelegt wird.",
        )

    def handle(self, *args, **options):
        service = RolloverService()
        try:
            result = service.rollover(options["liegenschaft"])
        except NotFound as exc:
            raise CommandError(str(exc)) from exc
        except ValidationConflict as exc:
            raise CommandError(" ".join(exc.messages)) from exc
        except NebenkostenError as exc:
            raise CommandError(str(exc)) from exc

        self.stdout.write(
            f"Wohnungen: {result.carried_units}, Mietzeiträume: {result.carried_periods}, "
            f"Mitmieter: {result.carried_co_tenants}, Fotos: {result.copied_photos}, "
            f"Kostenpositionen: {result.carried_cost_items}, Zählerstände: {result.carried_readings}"
        )
        self.stdout.write(
            self.style.SUCCESS(f"Jahreswechsel abgeschlossen: {result.property} (ID {result.property_id}).")
        )

from django.core.management.base import BaseCommand

from nebenkosten.services.maintenance import MaintenanceService


class Command(BaseCommand):
    help = "Findet Hausabrechnungen ohne Bezeichnung oder mit ungültigem Jahr und löscht sie optional."

    def add_arguments(self, parser):
        parser.add_argument(
            "--apply",
            action="store_true",
            help="Löscht die gefundenen Einträge. Ohne Flag nur Analyse (Dry-Run).",
        )

    def handle(self, *args, **options):
        apply_changes = bool(options["apply"])
        result = MaintenanceService().delete_incomplete_properties(apply=apply_changes)

        for prop in result.candidates:
            label = prop.name or "(ohne Bezeichnung)"
            self.stdout.write(f"- ID {prop.pk}: {label} / {prop.billing_year}")

        if not result.candidates:
            self.stdout.write(self.style.SUCCESS("Keine unvollständigen Einträge gefunden."))
        elif apply_changes:
            self.stdout.write(self.style.SUCCESS(f"{result.deleted} Eintrag/Einträge gelöscht."))
        else:
            self.stdout.write(
                self.style.WARNING(
                    f"Dry-Run: {len(result.candidates)} Eintrag/Einträge gefunden. "
                    "Mit --apply löschen."
                )
            )

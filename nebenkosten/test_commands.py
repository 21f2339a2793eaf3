import shutil
import tempfile
from datetime import date
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import connection
from django.db.migrations.recorder import MigrationRecorder
from django.test import TestCase, override_settings

from .models import Property, TenancyPeriod, Unit

TEST_MEDIA_ROOT = tempfile.mkdtemp(prefix="nebenkosten-commands-")


def tearDownModule():
    shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT)
class RolloverYearCommandTests(TestCase):
    def setUp(self):
        self.property = Property.objects.create(name="Birkenallee 3", billing_year=2024)
        unit = Unit.objects.create(property=self.property, apartment_number="1", label="EG", floor_area=70)
        TenancyPeriod.objects.create(
            unit=unit,
            year=2024,
            head_tenant_name="Huber",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 12, 31),
            persons=Decimal("2"),
        )

    def test_rollover_creates_next_year(self):
        output = StringIO()
        call_command("rollover_year", "--liegenschaft", str(self.property.pk), stdout=output)

        self.assertIn("Jahreswechsel abgeschlossen", output.getvalue())
        self.assertIn("Wohnungen: 1", output.getvalue())
        self.assertTrue(Property.objects.filter(name="Birkenallee 3", billing_year=2025).exists())

    def test_second_rollover_is_a_command_error(self):
        call_command("rollover_year", "--liegenschaft", str(self.property.pk), stdout=StringIO())
        with self.assertRaisesMessage(CommandError, "bereits ein Eintrag für das Jahr 2025"):
            call_command("rollover_year", "--liegenschaft", str(self.property.pk), stdout=StringIO())

    def test_unknown_property_is_a_command_error(self):
        with self.assertRaises(CommandError):
            call_command("rollover_year", "--liegenschaft", "999999", stdout=StringIO())


class CheckUnitsCommandTests(TestCase):
    def setUp(self):
        self.property = Property.objects.create(
            name="Birkenallee 3",
            billing_year=2024,
            total_area=130,
            unit_count=2,
        )
        Unit.objects.create(property=self.property, apartment_number="1", label="EG", floor_area=70)
        Unit.objects.create(property=self.property, apartment_number="2", label="OG", floor_area=60)

    def test_matching_property_reports_success(self):
        output = StringIO()
        call_command("check_units", "--liegenschaft", str(self.property.pk), stdout=output)
        self.assertIn("Alle Prüfungen erfolgreich", output.getvalue())
        self.assertIn("✓ Gesamtfläche: 130 qm", output.getvalue())

    def test_mismatch_is_a_command_error(self):
        Unit.objects.create(property=self.property, apartment_number="3", label="DG", floor_area=40)
        with self.assertRaisesMessage(CommandError, "Die Anzahl der Wohnungen stimmt nicht überein."):
            call_command("check_units", "--liegenschaft", str(self.property.pk), stdout=StringIO())

    def test_without_declared_values(self):
        Property.objects.filter(pk=self.property.pk).update(total_area=None, unit_count=None)
        output = StringIO()
        call_command("check_units", "--liegenschaft", str(self.property.pk), stdout=output)
        self.assertIn("nichts zu prüfen", output.getvalue())


class CleanupIncompletePropertiesCommandTests(TestCase):
    def setUp(self):
        self.valid = Property.objects.create(name="Birkenallee 3", billing_year=2024)
        self.blank = Property.objects.create(name="   ", billing_year=2024)
        self.old = Property.objects.create(name="Uralt", billing_year=0)

    def test_dry_run_keeps_rows(self):
        output = StringIO()
        call_command("cleanup_incomplete_properties", stdout=output)

        self.assertIn("Dry-Run: 2", output.getvalue())
        self.assertEqual(Property.objects.count(), 3)

    def test_apply_deletes_incomplete_rows(self):
        output = StringIO()
        call_command("cleanup_incomplete_properties", "--apply", stdout=output)

        self.assertIn("2 Eintrag/Einträge gelöscht", output.getvalue())
        self.assertEqual(list(Property.objects.values_list("pk", flat=True)), [self.valid.pk])

        second_output = StringIO()
        call_command("cleanup_incomplete_properties", "--apply", stdout=second_output)
        self.assertIn("Keine unvollständigen Einträge", second_output.getvalue())


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT)
class CreateSamplePropertyCommandTests(TestCase):
    def test_creates_sample_property_for_year(self):
        output = StringIO()
        call_command("create_sample_property", "--jahr", "2024", stdout=output)

        prop = Property.objects.get(name="Musterstraße 1", billing_year=2024)
        self.assertIn(f"ID {prop.pk}", output.getvalue())
        self.assertEqual(prop.units.count(), 3)

    def test_existing_sample_is_a_command_error(self):
        call_command("create_sample_property", "--jahr", "2024", stdout=StringIO())
        with self.assertRaises(CommandError):
            call_command("create_sample_property", "--jahr", "2024", stdout=StringIO())


class InitialMigrationTests(TestCase):
    def test_schema_comes_from_initial_migration(self):
        applied = MigrationRecorder(connection).applied_migrations()
        self.assertIn(("nebenkosten", "0001_initial"), applied)

        tables = connection.introspection.table_names()
        for table in (
            "nebenkosten_property",
            "nebenkosten_unit",
            "nebenkosten_tenancyperiod",
            "nebenkosten_historicaltenancyperiod",
            "nebenkosten_costitem",
            "nebenkosten_meterreadingphoto",
        ):
            self.assertIn(table, tables)

    def test_migrate_reports_nothing_pending(self):
        output = StringIO()
        call_command("migrate", "nebenkosten", "--plan", stdout=output)
        self.assertIn("No planned migration operations", output.getvalue())

import shutil
import tempfile
from datetime import date
from decimal import Decimal
from unittest.mock import patch

from django.core.files.storage import default_storage
from django.db import DatabaseError
from django.test import TestCase, override_settings

from .exceptions import DuplicatePeriod, IOFailure, StorageFailure, ValidationConflict
from .models import CoTenant, CostItem, IndividualProof, MeterReading, Property, TenancyPeriod, Unit
from .services.attachments import OWNER_TENANCY_PERIOD, AttachmentService
from .services.maintenance import MaintenanceService
from .services.rollover import RolloverService
from .services.unit_reconciliation import UnitReconciliationService

TEST_MEDIA_ROOT = tempfile.mkdtemp(prefix="nebenkosten-rollover-")


def tearDownModule():
    shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT)
class RolloverTests(TestCase):
    def setUp(self):
        self.source = Property.objects.create(
            name="Lindenweg 7",
            billing_year=2024,
            zip_code="12345",
            city="Musterstadt",
            total_area=170,
            unit_count=3,
            vacancy_check=Property.VacancyCheck.JA,
            manager_name="Hausverwaltung Linde",
            manager_email="info@linde.example",
            manager_in_email=True,
        )
        self.unit_2 = Unit.objects.create(
            property=self.source,
            apartment_number="2",
            label="Wohnung 2",
            floor_area=60,
            tenant_name="Vormieter Zwei",
            email="zwei@example.org",
        )
        self.unit_3 = Unit.objects.create(
            property=self.source,
            apartment_number="3",
            label="Wohnung 3",
            floor_area=50,
        )
        self.unit_4 = Unit.objects.create(
            property=self.source,
            apartment_number="4",
            label="Wohnung 4",
            floor_area=60,
        )
        self.period_2 = TenancyPeriod.objects.create(
            unit=self.unit_2,
            year=2024,
            head_tenant_name="Berger",
            start_date=date(2024, 3, 1),
            end_date=date(2024, 12, 31),
            persons=Decimal("2.5"),
            persons_description="2 Erwachsene, 1 Kind Wechselmodell",
            end_mode=TenancyPeriod.EndMode.OPEN_ENDED,
        )
        TenancyPeriod.objects.create(
            unit=self.unit_3,
            year=2024,
            head_tenant_name="Kurz",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 6, 30),
            persons=Decimal("1"),
        )
        TenancyPeriod.objects.create(
            unit=self.unit_4,
            year=2024,
            head_tenant_name="Gekündigt",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 12, 31),
            persons=Decimal("1"),
            end_mode=TenancyPeriod.EndMode.TERMINATED_AT_PERIOD_END,
        )
        CoTenant.objects.create(
            tenancy_period=self.period_2,
            name="Berger junior",
            start_date=date(2024, 5, 1),
            end_date=date(2024, 8, 31),
        )
        self.water = CostItem.objects.create(
            property=self.source,
            category=CostItem.Category.FRISCHWASSER,
            amount=Decimal("450.00"),
            allocation_method=CostItem.AllocationMethod.BY_CONSUMPTION,
        )
        self.advance = CostItem.objects.create(
            property=self.source,
            category=CostItem.Category.VORAUSZAHLUNG,
            amount=Decimal("0.00"),
            label="Abschläge",
            allocation_method=CostItem.AllocationMethod.BY_INDIVIDUAL_PROOF,
        )
        IndividualProof.objects.create(cost_item=self.advance, unit=self.unit_2, amount=Decimal("200.00"))
        for start, end in (("100", "130"), ("130", "142.5")):
            MeterReading.objects.create(
                unit=self.unit_2,
                meter_type="Frischwasser",
                meter_number="FW-001",
                start_value=Decimal(start),
                end_value=Decimal(end),
                counts_as_wastewater=True,
                description="Küche",
            )
        MeterReading.objects.create(
            unit=self.unit_2,
            meter_type="Strom",
            meter_number=None,
            start_value=Decimal("1000"),
            end_value=Decimal("2250"),
        )
        MeterReading.objects.create(
            unit=self.unit_3,
            meter_type="Frischwasser",
            meter_number="FW-003",
            start_value=Decimal("10"),
            end_value=Decimal("20"),
        )
        self.attachments = AttachmentService()
        self.photo = self.attachments.add_photo(OWNER_TENANCY_PERIOD, self.period_2.pk, b"mietvertrag", label="Vertrag")
        self.service = RolloverService()

    def _target_units(self, target: Property):
        return list(Unit.objects.filter(property=target).order_by("id"))

    def test_clones_property_metadata(self):
        result = self.service.rollover(self.source.pk)

        target = Property.objects.get(pk=result.property_id)
        self.assertEqual(target.name, "Lindenweg 7")
        self.assertEqual(target.billing_year, 2025)
        self.assertEqual(target.total_area, 170)
        self.assertEqual(target.unit_count, 3)
        self.assertEqual(target.vacancy_check, Property.VacancyCheck.JA)
        self.assertEqual(target.manager_name, "Hausverwaltung Linde")
        self.assertTrue(target.manager_in_email)

    def test_only_units_with_open_tenancy_at_year_end_are_carried(self):
        result = self.service.rollover(self.source.pk)

        units = self._target_units(result.property)
        self.assertEqual([unit.apartment_number for unit in units], ["2"])
        self.assertEqual(units[0].tenant_name, "Vormieter Zwei")
        self.assertEqual(units[0].email, "zwei@example.org")
        self.assertEqual(units[0].floor_area, 60)
        self.assertEqual(result.carried_units, 1)

    def test_carried_period_spans_the_whole_target_year(self):
        result = self.service.rollover(self.source.pk)

        unit = self._target_units(result.property)[0]
        periods = list(TenancyPeriod.objects.filter(unit=unit))
        self.assertEqual(len(periods), 1)
        period = periods[0]
        self.assertEqual(period.start_date, date(2025, 1, 1))
        self.assertEqual(period.end_date, date(2025, 12, 31))
        self.assertEqual(period.year, 2025)
        self.assertEqual(period.head_tenant_name, "Berger")
        self.assertEqual(period.persons, Decimal("2.5"))
        self.assertEqual(period.persons_description, "2 Erwachsene, 1 Kind Wechselmodell")
        self.assertEqual(period.end_mode, TenancyPeriod.EndMode.OPEN_ENDED)

        co_tenants = list(period.co_tenants.all())
        self.assertEqual([co_tenant.name for co_tenant in co_tenants], ["Berger junior"])
        self.assertEqual(co_tenants[0].start_date, date(2025, 1, 1))
        self.assertEqual(co_tenants[0].end_date, date(2025, 12, 31))

    def test_latest_period_per_head_tenant_is_used(self):
        follow_up = Unit.objects.create(property=self.source, apartment_number="5", label="Wohnung 5", floor_area=40)
        TenancyPeriod.objects.create(
            unit=follow_up,
            year=2024,
            head_tenant_name="Roth",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 6, 30),
            persons=Decimal("1"),
        )
        latest = TenancyPeriod.objects.create(
            unit=follow_up,
            year=2024,
            head_tenant_name="Roth",
            start_date=date(2024, 7, 1),
            end_date=date(2024, 12, 31),
            persons=Decimal("3"),
            end_mode=TenancyPeriod.EndMode.FIXED_END,
        )

        result = self.service.rollover(self.source.pk)

        carried = TenancyPeriod.objects.get(unit__property=result.property, unit__apartment_number="5")
        self.assertEqual(carried.persons, latest.persons)
        self.assertEqual(carried.end_mode, TenancyPeriod.EndMode.FIXED_END)

    def test_cost_items_are_carried_with_zero_amount_and_without_proofs(self):
        result = self.service.rollover(self.source.pk)

        items = list(CostItem.objects.filter(property=result.property).order_by("id"))
        self.assertEqual(len(items), 2)
        water = items[0]
        self.assertEqual(water.category, CostItem.Category.FRISCHWASSER)
        self.assertEqual(water.amount, Decimal("0"))
        self.assertEqual(water.allocation_method, CostItem.AllocationMethod.BY_CONSUMPTION)
        self.assertEqual(items[1].label, "Abschläge")
        self.assertFalse(IndividualProof.objects.filter(cost_item__property=result.property).exists())
        self.assertEqual(result.carried_cost_items, 2)

    def test_meter_readings_continue_from_highest_end_value(self):
        result = self.service.rollover(self.source.pk)

        unit = self._target_units(result.property)[0]
        readings = {
            (reading.meter_type, reading.meter_number): reading
            for reading in MeterReading.objects.filter(unit=unit)
        }
        self.assertEqual(set(readings), {("Frischwasser", "FW-001"), ("Strom", None)})
        water = readings[("Frischwasser", "FW-001")]
        self.assertEqual(water.start_value, Decimal("142.5"))
        self.assertEqual(water.end_value, Decimal("142.5"))
        self.assertEqual(water.delta, Decimal("0"))
        self.assertTrue(water.counts_as_wastewater)
        self.assertEqual(water.description, "Küche")
        self.assertEqual(readings[("Strom", None)].start_value, Decimal("2250"))
        self.assertFalse(MeterReading.objects.filter(unit__property=result.property, meter_number="FW-003").exists())

    def test_period_photos_are_copied_with_new_file_names(self):
        result = self.service.rollover(self.source.pk)

        period = TenancyPeriod.objects.get(unit__property=result.property)
        copies = self.attachments.photos(OWNER_TENANCY_PERIOD, period.pk)
        self.assertEqual(len(copies), 1)
        self.assertEqual(copies[0].label, "Vertrag")
        self.assertEqual(copies[0].sort_order, 0)
        self.assertNotEqual(copies[0].image_path, self.photo.image_path)
        self.assertTrue(default_storage.exists(self.photo.image_path))
        with default_storage.open(copies[0].image_path, "rb") as handle:
            self.assertEqual(handle.read(), b"mietvertrag")
        self.assertEqual(result.copied_photos, 1)

    def test_second_rollover_for_same_year_fails(self):
        self.service.rollover(self.source.pk)

        with self.assertRaises(ValidationConflict) as ctx:
            self.service.rollover(self.source.pk)

        self.assertIsInstance(ctx.exception, DuplicatePeriod)
        self.assertEqual(ctx.exception.stage, "Zieljahr prüfen")
        self.assertEqual(Property.objects.filter(name="Lindenweg 7", billing_year=2025).count(), 1)

    def test_failure_rolls_back_everything_and_removes_copied_files(self):
        copy_file = AttachmentService.copy_file
        copied_paths = []

        def recording_copy(service, source_path, target_path):
            saved = copy_file(service, source_path, target_path)
            copied_paths.append(saved)
            return saved

        with patch.object(AttachmentService, "copy_file", autospec=True, side_effect=recording_copy):
            with patch.object(RolloverService, "_carry_cost_items", side_effect=DatabaseError("Platte voll")):
                with self.assertRaises(StorageFailure) as ctx:
                    self.service.rollover(self.source.pk)

        self.assertEqual(ctx.exception.stage, "Kostenpositionen übernehmen")
        self.assertFalse(Property.objects.filter(billing_year=2025).exists())
        self.assertEqual(Unit.objects.count(), 3)
        self.assertEqual(TenancyPeriod.objects.count(), 3)
        self.assertEqual(len(copied_paths), 1)
        self.assertFalse(default_storage.exists(copied_paths[0]))
        self.assertTrue(default_storage.exists(self.photo.image_path))

    def test_file_copy_error_aborts_rollover(self):
        with patch.object(AttachmentService, "copy_file", side_effect=OSError("keine Berechtigung")):
            with self.assertRaises(IOFailure) as ctx:
                self.service.rollover(self.source.pk)

        self.assertEqual(ctx.exception.stage, "Mietzeiträume übernehmen")
        self.assertFalse(Property.objects.filter(billing_year=2025).exists())

    def test_year_is_locked_once_next_year_exists(self):
        self.assertFalse(self.service.is_year_locked("Lindenweg 7", 2024))
        self.service.rollover(self.source.pk)
        self.assertTrue(self.service.is_year_locked("Lindenweg 7", 2024))
        self.assertFalse(self.service.is_year_locked("Lindenweg 7", 2025))


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT)
class SamplePropertyRolloverTests(TestCase):
    def test_sample_property_reconciles_and_rolls_over(self):
        prop = MaintenanceService().create_sample_property(2024)

        self.assertEqual(Unit.objects.filter(property=prop).count(), 3)
        self.assertEqual(TenancyPeriod.objects.filter(unit__property=prop).count(), 5)
        self.assertEqual(CostItem.objects.filter(property=prop).count(), 15)
        self.assertEqual(IndividualProof.objects.filter(cost_item__property=prop).count(), 9)
        self.assertEqual(MeterReading.objects.filter(unit__property=prop).count(), 18)
        self.assertTrue(UnitReconciliationService().validate(prop.pk).success)

        result = RolloverService().rollover(prop.pk)

        carried = Unit.objects.filter(property=result.property).order_by("apartment_number")
        self.assertEqual([unit.tenant_name for unit in carried], ["Muster-Folge-Mieter", "Muster-Mieter 2"])
        tenants = set(
            TenancyPeriod.objects.filter(unit__property=result.property).values_list("head_tenant_name", flat=True)
        )
        self.assertEqual(tenants, {"Muster-Folge-Mieter", "Muster-Mieter 2b"})
        self.assertTrue(UnitReconciliationService().validate(result.property_id).success)

    def test_sample_property_exists_only_once_per_year(self):
        MaintenanceService().create_sample_property(2024)
        with self.assertRaises(DuplicatePeriod):
            MaintenanceService().create_sample_property(2024)

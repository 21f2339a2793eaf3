import shutil
import tempfile
from datetime import date
from decimal import Decimal
from unittest.mock import patch

from django.core.files.storage import FileSystemStorage, default_storage
from django.db import DatabaseError
from django.test import TestCase, override_settings

from .exceptions import DuplicatePeriod, NotFound, StorageFailure, ValidationConflict
from .models import CostItem, IndividualProof, MeterReading, Property, TenancyPeriod, Unit
from .services.apartment_identity import ApartmentIdentityService
from .services.attachments import (
    OWNER_COST_ITEM,
    OWNER_METER_READING,
    OWNER_PROPERTY,
    OWNER_TENANCY_PERIOD,
    AttachmentService,
)
from .services.cost_items import CostItemService
from .services.meter_readings import MeterReadingService
from .services.properties import PropertyService
from .services.tenancy_periods import TenancyPeriodService, TenancyPeriodValidator
from .services.unit_reconciliation import UnitReconciliationService
from .services.units import UnitCreationGuard, UnitService
from .storage_paths import build_photo_path, relocate_photo_path

TEST_MEDIA_ROOT = tempfile.mkdtemp(prefix="nebenkosten-tests-")


def tearDownModule():
    shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)


class NebenkostenTestMixin:
    def _create_property(self, year: int = 2024, **fields) -> Property:
        return Property.objects.create(name=fields.pop("name", "Teststraße 5"), billing_year=year, **fields)

    def _create_unit(self, prop: Property, number: str, floor_area: int = 50, **fields) -> Unit:
        return Unit.objects.create(
            property=prop,
            apartment_number=number,
            label=fields.pop("label", f"Wohnung {number}"),
            floor_area=floor_area,
            **fields,
        )

    def _create_period(
        self,
        unit: Unit,
        start: date,
        end: date,
        *,
        tenant: str = "Mustermann",
        persons: str = "1",
        end_mode=TenancyPeriod.EndMode.OPEN_ENDED,
    ) -> TenancyPeriod:
        return TenancyPeriod.objects.create(
            unit=unit,
            year=start.year,
            head_tenant_name=tenant,
            start_date=start,
            end_date=end,
            persons=Decimal(persons),
            end_mode=end_mode,
        )


class ModelNormalizationTests(NebenkostenTestMixin, TestCase):
    def setUp(self):
        self.property = self._create_property()

    def test_blank_optional_text_is_stored_as_none(self):
        unit = self._create_unit(self.property, " 3 ", tenant_name="   ", email="", city=" Wien ")
        unit.refresh_from_db()
        self.assertIsNone(unit.tenant_name)
        self.assertIsNone(unit.email)
        self.assertEqual(unit.city, "Wien")
        self.assertEqual(unit.apartment_number, "3")

    def test_apartment_number_defaults_to_empty_string(self):
        unit = Unit.objects.create(property=self.property, label="Dachgeschoss", floor_area=30)
        unit.refresh_from_db()
        self.assertEqual(unit.apartment_number, "")

    def test_unknown_end_mode_decodes_to_open_ended(self):
        unit = self._create_unit(self.property, "1")
        period = self._create_period(unit, date(2024, 1, 1), date(2024, 12, 31))
        TenancyPeriod.objects.filter(pk=period.pk).update(end_mode="altesFormat")

        period = TenancyPeriod.objects.get(pk=period.pk)

        self.assertEqual(period.end_mode, TenancyPeriod.EndMode.OPEN_ENDED)

    def test_unknown_category_and_allocation_decode_to_defaults(self):
        item = CostItem.objects.create(
            property=self.property,
            category=CostItem.Category.GAS,
            amount=Decimal("10.00"),
            allocation_method=CostItem.AllocationMethod.BY_CONSUMPTION,
        )
        CostItem.objects.filter(pk=item.pk).update(category="Fernwärme", allocation_method="nach Laune")

        item = CostItem.objects.get(pk=item.pk)

        self.assertEqual(item.category, CostItem.Category.SONSTIGES)
        self.assertEqual(item.allocation_method, CostItem.AllocationMethod.BY_AREA)

    def test_unknown_vacancy_check_decodes_to_none(self):
        Property.objects.filter(pk=self.property.pk).update(vacancy_check="vielleicht")
        self.assertIsNone(Property.objects.get(pk=self.property.pk).vacancy_check)

    def test_meter_delta_is_recomputed_on_save(self):
        unit = self._create_unit(self.property, "1")
        reading = MeterReading.objects.create(
            unit=unit,
            meter_type="Frischwasser",
            start_value=Decimal("100.000"),
            end_value=Decimal("142.500"),
        )
        self.assertEqual(reading.delta, Decimal("42.5"))

        reading.end_value = Decimal("150.000")
        reading.save()
        reading.refresh_from_db()
        self.assertEqual(reading.delta, Decimal("50.000"))

    def test_period_year_defaults_to_start_year(self):
        unit = self._create_unit(self.property, "1")
        period = TenancyPeriod.objects.create(
            unit=unit,
            head_tenant_name="Mustermann",
            start_date=date(2024, 3, 1),
            end_date=date(2024, 12, 31),
        )
        self.assertEqual(period.year, 2024)


class TenancyPeriodHistoryTests(NebenkostenTestMixin, TestCase):
    def setUp(self):
        self.unit = self._create_unit(self._create_property(), "1")
        self.service = TenancyPeriodService()

    def test_history_created_on_create(self):
        period = self.service.create(
            unit_id=self.unit.pk,
            head_tenant_name="Mustermann",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 6, 30),
        )
        self.assertEqual(period.history.count(), 1)

    def test_history_created_on_update(self):
        period = self.service.create(
            unit_id=self.unit.pk,
            head_tenant_name="Mustermann",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 6, 30),
        )
        self.service.update(period.pk, persons="2.5")
        self.assertEqual(period.history.count(), 2)
        self.assertEqual(period.history.first().persons, Decimal("2.50"))


class ApartmentIdentityTests(NebenkostenTestMixin, TestCase):
    def setUp(self):
        self.property = self._create_property()
        self.first = self._create_unit(self.property, "1")
        self.second = self._create_unit(self.property, "1")
        self.other = self._create_unit(self.property, "2")
        self.anonymous_a = self._create_unit(self.property, "")
        self.anonymous_b = self._create_unit(self.property, "")
        self.service = ApartmentIdentityService()

    def test_logical_apartment_contains_all_episodes_ordered_by_id(self):
        self.assertEqual(
            self.service.logical_apartment_unit_ids(self.second.pk),
            [self.first.pk, self.second.pk],
        )
        self.assertEqual(self.service.logical_apartment_unit_ids(self.other.pk), [self.other.pk])

    def test_empty_number_forms_its_own_group(self):
        self.assertEqual(
            self.service.logical_apartment_unit_ids(self.anonymous_a.pk),
            [self.anonymous_a.pk, self.anonymous_b.pk],
        )

    def test_same_number_in_other_year_is_a_different_apartment(self):
        next_year = self._create_property(2025)
        later = self._create_unit(next_year, "1")
        self.assertEqual(self.service.logical_apartment_unit_ids(later.pk), [later.pk])

    def test_unit_ids_for_number_trims_the_number(self):
        self.assertEqual(
            self.service.unit_ids_for_number(self.property.pk, " 1 "),
            [self.first.pk, self.second.pk],
        )
        self.assertEqual(self.service.unit_ids_for_number(self.property.pk, "7"), [])

    def test_previous_episode(self):
        self.assertEqual(self.service.previous_episode(self.second.pk), self.first)
        self.assertIsNone(self.service.previous_episode(self.first.pk))
        self.assertIsNone(self.service.previous_episode(self.anonymous_b.pk))

    def test_unknown_unit_raises_not_found(self):
        with self.assertRaises(NotFound):
            self.service.logical_apartment_unit_ids(999999)


class TenancyPeriodValidatorTests(NebenkostenTestMixin, TestCase):
    def setUp(self):
        self.property = self._create_property()
        self.unit = self._create_unit(self.property, "1")
        self.validator = TenancyPeriodValidator()
        self.spring = self._create_period(self.unit, date(2024, 1, 1), date(2024, 5, 31), persons="2")
        self.summer = self._create_period(self.unit, date(2024, 6, 1), date(2024, 9, 30))

    def test_same_day_boundary_counts_as_overlap(self):
        conflict = self.validator.conflicting_period([self.unit.pk], date(2024, 5, 31), date(2024, 8, 1))
        self.assertEqual(conflict, self.spring)

    def test_adjacent_period_has_no_conflict(self):
        self.assertIsNone(
            self.validator.conflicting_period([self.unit.pk], date(2024, 10, 1), date(2024, 12, 31))
        )

    def test_exclude_id_ignores_edited_period(self):
        self.assertIsNone(
            self.validator.conflicting_period(
                [self.unit.pk],
                date(2024, 6, 1),
                date(2024, 9, 30),
                exclude_id=self.summer.pk,
            )
        )

    def test_overlap_test_is_symmetric(self):
        ranges = [
            (date(2024, 1, 1), date(2024, 3, 31)),
            (date(2024, 3, 31), date(2024, 4, 30)),
            (date(2024, 4, 1), date(2024, 4, 1)),
            (date(2024, 2, 1), date(2024, 2, 28)),
            (date(2024, 5, 1), date(2024, 12, 31)),
        ]
        for index, (start_a, end_a) in enumerate(ranges):
            for start_b, end_b in ranges[index + 1 :]:
                prop = self._create_property(name=f"Symmetrie {index} {start_b}")
                unit_a = self._create_unit(prop, "A")
                unit_b = self._create_unit(prop, "B")
                self._create_period(unit_a, start_a, end_a)
                self._create_period(unit_b, start_b, end_b)
                b_against_a = self.validator.conflicting_period([unit_a.pk], start_b, end_b)
                a_against_b = self.validator.conflicting_period([unit_b.pk], start_a, end_a)
                self.assertEqual(b_against_a is None, a_against_b is None)

    def test_previous_and_next_period(self):
        self.assertEqual(self.validator.previous_period([self.unit.pk], date(2024, 6, 1)), self.spring)
        self.assertEqual(self.validator.next_period([self.unit.pk], date(2024, 5, 31)), self.summer)
        self.assertIsNone(self.validator.previous_period([self.unit.pk], date(2024, 5, 31)))
        self.assertIsNone(
            self.validator.next_period([self.unit.pk], date(2024, 5, 31), exclude_id=self.summer.pk)
        )

    def test_latest_period(self):
        self.assertEqual(self.validator.latest_period(self.unit.pk), self.summer)
        empty = self._create_unit(self.property, "9")
        self.assertIsNone(self.validator.latest_period(empty.pk))


class TenancyPeriodServiceTests(NebenkostenTestMixin, TestCase):
    def setUp(self):
        self.property = self._create_property()
        self.unit = self._create_unit(self.property, "1")
        self.service = TenancyPeriodService()
        self.spring = self.service.create(
            unit_id=self.unit.pk,
            head_tenant_name="Muster-Mieter 1",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 5, 31),
            persons=2,
        )
        self.summer = self.service.create(
            unit_id=self.unit.pk,
            head_tenant_name="Muster-Mieter 1",
            start_date=date(2024, 6, 1),
            end_date=date(2024, 9, 30),
            persons=1,
        )

    def test_overlapping_insert_is_rejected_without_write(self):
        with self.assertRaises(ValidationConflict) as ctx:
            self.service.create(
                unit_id=self.unit.pk,
                head_tenant_name="Neuer Mieter",
                start_date=date(2024, 5, 31),
                end_date=date(2024, 8, 1),
            )
        self.assertEqual(ctx.exception.code, "overlap")
        self.assertEqual(ctx.exception.stage, "Mietzeitraum anlegen")
        self.assertEqual(TenancyPeriod.objects.filter(unit=self.unit).count(), 2)

    def test_overlap_is_checked_across_episodes_of_one_apartment(self):
        follow_up = self._create_unit(self.property, "1")
        with self.assertRaises(ValidationConflict):
            self.service.create(
                unit_id=follow_up.pk,
                head_tenant_name="Folge-Mieter",
                start_date=date(2024, 9, 30),
                end_date=date(2024, 12, 31),
            )
        period = self.service.create(
            unit_id=follow_up.pk,
            head_tenant_name="Folge-Mieter",
            start_date=date(2024, 10, 1),
            end_date=date(2024, 12, 31),
            persons=3,
        )
        self.assertEqual(period.persons, Decimal("3"))

    def test_start_after_end_is_rejected(self):
        with self.assertRaises(ValidationConflict) as ctx:
            self.service.create(
                unit_id=self.unit.pk,
                head_tenant_name="Verdreht",
                start_date=date(2024, 12, 31),
                end_date=date(2024, 10, 1),
            )
        self.assertEqual(ctx.exception.code, "invalid_range")

    def test_update_ignores_itself_but_not_neighbours(self):
        updated = self.service.update(self.summer.pk, end_date=date(2024, 10, 31))
        self.assertEqual(updated.end_date, date(2024, 10, 31))

        with self.assertRaises(ValidationConflict):
            self.service.update(self.summer.pk, start_date=date(2024, 5, 15))
        self.summer.refresh_from_db()
        self.assertEqual(self.summer.start_date, date(2024, 6, 1))

    def test_no_two_periods_of_an_apartment_overlap_after_writes(self):
        follow_up = self._create_unit(self.property, "1")
        candidates = [
            (self.unit.pk, date(2024, 10, 1), date(2024, 10, 31)),
            (follow_up.pk, date(2024, 10, 15), date(2024, 12, 31)),
            (follow_up.pk, date(2024, 11, 1), date(2024, 12, 31)),
            (self.unit.pk, date(2024, 12, 31), date(2024, 12, 31)),
        ]
        for unit_id, start, end in candidates:
            try:
                self.service.create(unit_id=unit_id, head_tenant_name="X", start_date=start, end_date=end)
            except ValidationConflict:
                pass

        periods = list(TenancyPeriod.objects.filter(unit__property=self.property, unit__apartment_number="1"))
        for period in periods:
            others = [other for other in periods if other.pk != period.pk]
            for other in others:
                overlaps = other.start_date <= period.end_date and other.end_date >= period.start_date
                self.assertFalse(overlaps, f"{period} überschneidet sich mit {other}")

    def test_moving_start_date_into_next_year_updates_year(self):
        follow_up = self._create_unit(self.property, "1")
        period = self.service.create(
            unit_id=follow_up.pk,
            head_tenant_name="Folge-Mieter",
            start_date=date(2024, 12, 1),
            end_date=date(2025, 3, 31),
        )
        self.assertEqual(period.year, 2024)

        moved = self.service.update(period.pk, start_date=date(2025, 1, 1))
        self.assertEqual(moved.year, 2025)

        kept = self.service.update(period.pk, start_date=date(2025, 2, 1), year=2024)
        self.assertEqual(kept.year, 2024)

    def test_periods_for_unit_are_ordered_by_start(self):
        self.assertEqual(
            [period.pk for period in self.service.periods_for_unit(self.unit.pk)],
            [self.spring.pk, self.summer.pk],
        )

    def test_invalid_end_mode_is_rejected(self):
        with self.assertRaises(ValidationConflict):
            self.service.update(self.summer.pk, end_mode="irgendwann")

    def test_delete_cascades_to_co_tenants(self):
        self.service.add_co_tenant(
            self.summer.pk,
            name="Mitbewohnerin",
            start_date=date(2024, 6, 1),
            end_date=date(2024, 9, 30),
        )
        self.service.delete(self.summer.pk)
        self.assertFalse(TenancyPeriod.objects.filter(pk=self.summer.pk).exists())
        self.assertEqual(self.service.co_tenants(self.summer.pk), [])

    def test_co_tenant_operations(self):
        co_tenant = self.service.add_co_tenant(
            self.spring.pk,
            name=" Erika ",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 5, 31),
        )
        self.assertEqual(co_tenant.name, "Erika")

        updated = self.service.update_co_tenant(co_tenant.pk, end_date=date(2024, 3, 31))
        self.assertEqual(updated.end_date, date(2024, 3, 31))
        with self.assertRaises(ValidationConflict):
            self.service.update_co_tenant(co_tenant.pk, start_date=date(2024, 4, 1))

        self.service.delete_co_tenant(co_tenant.pk)
        self.assertEqual(self.service.co_tenants(self.spring.pk), [])
        with self.assertRaises(NotFound):
            self.service.delete_co_tenant(co_tenant.pk)

    def test_unknown_period_raises_not_found(self):
        with self.assertRaises(NotFound):
            self.service.update(999999, persons=2)


class UnitReconciliationTests(NebenkostenTestMixin, TestCase):
    def setUp(self):
        self.property = self._create_property(total_area=110, unit_count=2)
        self._create_unit(self.property, "1", 50)
        self._create_unit(self.property, "2", 60)
        self.service = UnitReconciliationService()

    def test_validate_success_lists_checked_fields(self):
        result = self.service.validate(self.property.pk)
        self.assertTrue(result.success)
        self.assertIsNone(result.error_message)
        self.assertEqual(
            result.success_message,
            "Alle Prüfungen erfolgreich:\n\n✓ Anzahl Wohnungen: 2\n✓ Gesamtfläche: 110 qm",
        )

    def test_second_episode_with_same_number_does_not_change_totals(self):
        self._create_unit(self.property, "1", 50)
        self.assertEqual(self.service.unit_count(self.property.pk), 2)
        self.assertEqual(self.service.area_sum(self.property.pk), 110)

    def test_area_of_highest_episode_wins(self):
        self._create_unit(self.property, "1", 55)
        self.assertEqual(self.service.area_sum(self.property.pk), 115)
        match = self.service.check_area_match(self.property.pk)
        self.assertFalse(match.matches)
        self.assertEqual(match.declared_area, 110)
        self.assertEqual(match.actual_sum, 115)

    def test_unit_count_is_checked_first(self):
        self._create_unit(self.property, "3", 40)
        result = self.service.validate(self.property.pk)
        self.assertFalse(result.success)
        self.assertEqual(
            result.error_message,
            "Die Anzahl der Wohnungen stimmt nicht überein.\n\nErwartet: 2\nTatsächlich: 3",
        )

    def test_area_mismatch_message(self):
        Property.objects.filter(pk=self.property.pk).update(total_area=100)
        result = self.service.validate(self.property.pk)
        self.assertFalse(result.success)
        self.assertEqual(
            result.error_message,
            "Die Gesamtfläche stimmt nicht überein.\n\nErwartet: 100 qm\nTatsächlich: 110 qm",
        )

    def test_without_declared_values_there_is_no_message(self):
        prop = self._create_property(name="Ohne Sollwerte")
        self._create_unit(prop, "1", 70)
        result = self.service.validate(prop.pk)
        self.assertTrue(result.success)
        self.assertIsNone(result.success_message)
        self.assertTrue(self.service.check_area_match(prop.pk).matches)

    def test_empty_property_sums_to_zero(self):
        prop = self._create_property(name="Leer")
        self.assertEqual(self.service.area_sum(prop.pk), 0)
        self.assertEqual(self.service.unit_count(prop.pk), 0)

    def test_unknown_property_raises_not_found(self):
        with self.assertRaises(NotFound):
            self.service.validate(999999)


class UnitCreationGuardTests(NebenkostenTestMixin, TestCase):
    def setUp(self):
        self.property_2025 = self._create_property(2025)
        self.unit = self._create_unit(self.property_2025, "1")
        self.period = self._create_period(self.unit, date(2025, 1, 1), date(2025, 12, 31))
        self.guard = UnitCreationGuard()

    def test_open_tenancy_until_year_end_blocks_same_number(self):
        decision = self.guard.can_create_unit("1", self.property_2025.pk, 2025)
        self.assertFalse(decision.allowed)
        self.assertIn("Nummer „1“", decision.reason)
        self.assertIn("31.12.2025", decision.reason)

    def test_later_billing_year_is_allowed(self):
        self.assertTrue(self.guard.can_create_unit("1", self.property_2025.pk, 2026).allowed)

    def test_number_is_trimmed_and_empty_is_always_allowed(self):
        self.assertFalse(self.guard.can_create_unit("  1 ", self.property_2025.pk, 2025).allowed)
        self.assertTrue(self.guard.can_create_unit("   ", self.property_2025.pk, 2025).allowed)

    def test_terminated_period_does_not_block(self):
        TenancyPeriod.objects.filter(pk=self.period.pk).update(
            end_mode=TenancyPeriod.EndMode.TERMINATED_AT_PERIOD_END
        )
        self.assertTrue(self.guard.can_create_unit("1", self.property_2025.pk, 2025).allowed)

    def test_shortened_period_allows_follow_up_episode(self):
        TenancyPeriod.objects.filter(pk=self.period.pk).update(end_date=date(2025, 9, 30))
        unit = UnitService().create_unit(self.property_2025.pk, apartment_number="1", label="Wohnung 1")
        self.assertEqual(unit.apartment_number, "1")

    def test_create_unit_raises_when_blocked(self):
        with self.assertRaises(ValidationConflict) as ctx:
            UnitService().create_unit(self.property_2025.pk, apartment_number="1", label="Wohnung 1")
        self.assertEqual(ctx.exception.code, "unit_blocked")
        self.assertEqual(Unit.objects.filter(property=self.property_2025).count(), 1)


class UnitServiceTests(NebenkostenTestMixin, TestCase):
    def setUp(self):
        self.property = self._create_property()
        self.service = UnitService()

    def test_renumbering_into_overlapping_apartment_is_rejected(self):
        first = self._create_unit(self.property, "1")
        second = self._create_unit(self.property, "2")
        self._create_period(first, date(2024, 1, 1), date(2024, 9, 30))
        self._create_period(second, date(2024, 6, 1), date(2024, 12, 31))

        with self.assertRaises(ValidationConflict) as ctx:
            self.service.update_unit(second.pk, apartment_number="1")
        self.assertEqual(ctx.exception.code, "overlap")
        second.refresh_from_db()
        self.assertEqual(second.apartment_number, "2")

    def test_renumbering_onto_apartment_with_running_tenancy_is_blocked(self):
        occupied = self._create_unit(self.property, "1")
        self._create_period(occupied, date(2024, 1, 1), date(2024, 12, 31))
        spare = self.service.create_unit(self.property.pk, apartment_number="9", label="Wohnung 9")

        with self.assertRaises(ValidationConflict) as ctx:
            self.service.update_unit(spare.pk, apartment_number=" 1 ")
        self.assertEqual(ctx.exception.code, "unit_blocked")
        self.assertIn("31.12.2024", ctx.exception.message)
        spare.refresh_from_db()
        self.assertEqual(spare.apartment_number, "9")
        self.assertEqual(
            ApartmentIdentityService().unit_ids_for_number(self.property.pk, "1"),
            [occupied.pk],
        )

    def test_renumbering_after_tenancy_ends_early_is_allowed(self):
        occupied = self._create_unit(self.property, "1")
        self._create_period(occupied, date(2024, 1, 1), date(2024, 6, 30))
        spare = self.service.create_unit(self.property.pk, apartment_number="9", label="Wohnung 9")

        self.service.update_unit(spare.pk, apartment_number="1")
        spare.refresh_from_db()
        self.assertEqual(spare.apartment_number, "1")

    def test_units_for_property_in_creation_order(self):
        other_property = self._create_property(2025)
        first = self.service.create_unit(self.property.pk, apartment_number="2", label="Wohnung 2")
        second = self.service.create_unit(self.property.pk, apartment_number="1", label="Wohnung 1")
        self.service.create_unit(other_property.pk, apartment_number="1", label="Wohnung 1")

        self.assertEqual(
            [unit.pk for unit in self.service.units_for_property(self.property.pk)],
            [first.pk, second.pk],
        )

    def test_update_and_delete(self):
        unit = self.service.create_unit(self.property.pk, apartment_number="4", label="Wohnung 4", floor_area=42)
        self.service.update_unit(unit.pk, floor_area=44, email=" ")
        unit.refresh_from_db()
        self.assertEqual(unit.floor_area, 44)
        self.assertIsNone(unit.email)

        self.service.delete_unit(unit.pk)
        with self.assertRaises(NotFound):
            self.service.get(unit.pk)

    def test_unknown_field_is_a_type_error(self):
        with self.assertRaises(TypeError):
            self.service.create_unit(self.property.pk, label="X", door="1")


class MeterReadingServiceTests(NebenkostenTestMixin, TestCase):
    def setUp(self):
        self.property = self._create_property()
        self.previous = self._create_unit(self.property, "1")
        self.current = self._create_unit(self.property, "1")
        self.service = MeterReadingService()
        self.service.create_reading(
            self.previous.pk,
            meter_type="Frischwasser",
            meter_number="FW-1",
            start_value="100",
            end_value="120.5",
        )
        self.highest = self.service.create_reading(
            self.previous.pk,
            meter_type="Frischwasser",
            meter_number=None,
            start_value="120.5",
            end_value="130.25",
        )

    def test_previous_reading_suggests_predecessor_value(self):
        suggestion = self.service.previous_reading(self.current.pk, "Frischwasser", "FW-1")
        self.assertEqual(suggestion, self.highest)
        self.assertIsNone(self.service.previous_reading(self.current.pk, "Gas"))

    def test_no_suggestion_once_unit_has_own_readings(self):
        self.service.create_reading(self.current.pk, meter_type="Strom", start_value=0, end_value=10)
        self.assertIsNone(self.service.previous_reading(self.current.pk, "Frischwasser"))

    def test_update_recomputes_delta(self):
        reading = self.service.update_reading(self.highest.pk, end_value="140.25")
        self.assertEqual(reading.delta, Decimal("19.75"))

    def test_missing_meter_type_is_rejected(self):
        with self.assertRaises(ValidationConflict):
            self.service.create_reading(self.current.pk, meter_type=" ", start_value=0, end_value=0)

    def test_delete_reading(self):
        self.service.delete_reading(self.highest.pk)
        self.assertEqual(len(self.service.readings_for_unit(self.previous.pk)), 1)


class CostItemServiceTests(NebenkostenTestMixin, TestCase):
    def setUp(self):
        self.property = self._create_property()
        self.unit = self._create_unit(self.property, "1")
        self.service = CostItemService()
        self.item = self.service.create_cost_item(
            self.property.pk,
            category=CostItem.Category.VORAUSZAHLUNG,
            allocation_method=CostItem.AllocationMethod.BY_INDIVIDUAL_PROOF,
        )

    def test_individual_proof_is_upserted(self):
        self.service.upsert_individual_proof(self.item.pk, self.unit.pk, amount="200")
        proof = self.service.upsert_individual_proof(
            self.item.pk,
            self.unit.pk,
            proof_date=date(2024, 3, 1),
            amount="180.50",
        )
        self.assertEqual(IndividualProof.objects.filter(cost_item=self.item, unit=self.unit).count(), 1)
        proof.refresh_from_db()
        self.assertEqual(proof.amount, Decimal("180.50"))
        self.assertEqual(proof.proof_date, date(2024, 3, 1))

    def test_individual_proof_listing_and_delete(self):
        self.service.upsert_individual_proof(self.item.pk, self.unit.pk, amount=50)
        self.assertEqual(len(self.service.individual_proofs(unit_id=self.unit.pk)), 1)
        self.assertEqual(self.service.delete_individual_proof(self.item.pk, self.unit.pk), 1)
        self.assertEqual(self.service.individual_proofs(cost_item_id=self.item.pk), [])

    def test_update_and_invalid_choices(self):
        item = self.service.update_cost_item(self.item.pk, amount="12.30", label="  ")
        self.assertEqual(item.amount, Decimal("12.30"))
        self.assertIsNone(item.label)
        with self.assertRaises(ValidationConflict):
            self.service.update_cost_item(self.item.pk, category="Fernwärme")
        with self.assertRaises(ValidationConflict):
            self.service.create_cost_item(self.property.pk, category="Gas", allocation_method="nach Laune")

    def test_cost_items_for_property(self):
        gas = self.service.create_cost_item(self.property.pk, category=CostItem.Category.GAS, amount="99.90")
        self.service.create_cost_item(self._create_property(2025).pk, category=CostItem.Category.GAS)

        self.assertEqual(
            [item.pk for item in self.service.cost_items_for_property(self.property.pk)],
            [self.item.pk, gas.pk],
        )

    def test_delete_cascades_to_proofs(self):
        self.service.upsert_individual_proof(self.item.pk, self.unit.pk, amount=50)
        self.service.delete_cost_item(self.item.pk)
        self.assertFalse(IndividualProof.objects.exists())


class PropertyServiceTests(NebenkostenTestMixin, TestCase):
    def setUp(self):
        self.service = PropertyService()

    def test_duplicate_year_is_rejected(self):
        self.service.create_property(name="Hausweg 2", billing_year=2024)
        with self.assertRaises(DuplicatePeriod):
            self.service.create_property(name=" Hausweg 2 ", billing_year=2024)

    def test_years_for_name(self):
        for year in (2025, 2023, 2024):
            self.service.create_property(name="Hausweg 2", billing_year=year)
        self.service.create_property(name="Hausweg 4", billing_year=2022)

        self.assertEqual(self.service.years_for_name("Hausweg 2"), [2023, 2024, 2025])
        self.assertEqual(self.service.years_for_name("Unbekannt"), [])

    def test_delete_cascades_to_units_and_cost_items(self):
        prop = self.service.create_property(name="Hausweg 2", billing_year=2024)
        unit = self._create_unit(prop, "1")
        self._create_period(unit, date(2024, 1, 1), date(2024, 12, 31))
        CostItem.objects.create(property=prop, category=CostItem.Category.GAS)

        self.service.delete_property(prop.pk)

        self.assertFalse(Unit.objects.exists())
        self.assertFalse(TenancyPeriod.objects.exists())
        self.assertFalse(CostItem.objects.exists())


class StoragePathTests(TestCase):
    def test_photo_paths_are_scoped_per_owner(self):
        path = build_photo_path("mietzeitraum", 17)
        self.assertTrue(path.startswith("uploads/mietzeitraum/17/img_"))
        self.assertTrue(path.endswith(".jpg"))

    def test_property_photos_use_slugified_name(self):
        path = build_photo_path("hausfotos", "Musterstraße 1", extension="png")
        self.assertTrue(path.startswith("uploads/hausfotos/musterstrae-1/img_"))
        self.assertTrue(path.endswith(".png"))

    def test_relocate_keeps_file_name(self):
        moved = relocate_photo_path("uploads/hausfotos/alt/img_abc.jpg", "hausfotos", "Neu")
        self.assertEqual(moved, "uploads/hausfotos/neu/img_abc.jpg")


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT)
class AttachmentServiceTests(NebenkostenTestMixin, TestCase):
    def setUp(self):
        self.property = self._create_property()
        self.unit = self._create_unit(self.property, "1")
        self.period = self._create_period(self.unit, date(2024, 1, 1), date(2024, 12, 31))
        self.service = AttachmentService()

    def test_add_photo_writes_file_and_numbers_sort_order(self):
        first = self.service.add_photo(OWNER_TENANCY_PERIOD, self.period.pk, b"erstes", label=" Vertrag ")
        second = self.service.add_photo(OWNER_TENANCY_PERIOD, self.period.pk, b"zweites")

        self.assertEqual((first.sort_order, second.sort_order), (0, 1))
        self.assertEqual(first.label, "Vertrag")
        self.assertTrue(default_storage.exists(first.image_path))
        self.assertIn(f"/mietzeitraum/{self.period.pk}/", first.image_path)
        self.assertEqual(
            [photo.pk for photo in self.service.photos(OWNER_TENANCY_PERIOD, self.period.pk)],
            [first.pk, second.pk],
        )

    def test_delete_photo_removes_file_after_commit(self):
        photo = self.service.add_photo(OWNER_TENANCY_PERIOD, self.period.pk, b"bild")
        with self.captureOnCommitCallbacks(execute=True):
            self.service.delete_photo(OWNER_TENANCY_PERIOD, photo.pk)
        self.assertFalse(default_storage.exists(photo.image_path))

    def test_deleting_period_removes_photo_files(self):
        photo = self.service.add_photo(OWNER_TENANCY_PERIOD, self.period.pk, b"bild")
        with self.captureOnCommitCallbacks(execute=True):
            TenancyPeriodService().delete(self.period.pk)
        self.assertFalse(default_storage.exists(photo.image_path))

    def test_relabel_photo(self):
        photo = self.service.add_photo(OWNER_TENANCY_PERIOD, self.period.pk, b"bild")
        self.service.relabel_photo(OWNER_TENANCY_PERIOD, photo.pk, "Übergabeprotokoll")
        photo.refresh_from_db()
        self.assertEqual(photo.label, "Übergabeprotokoll")

    def test_duplicate_skips_missing_files(self):
        kept = self.service.add_photo(OWNER_TENANCY_PERIOD, self.period.pk, b"vorhanden", label="A")
        missing = self.service.add_photo(OWNER_TENANCY_PERIOD, self.period.pk, b"weg", label="B")
        default_storage.delete(missing.image_path)
        target = self._create_period(self.unit, date(2025, 1, 1), date(2025, 12, 31))
        copied_paths = []

        copies = self.service.duplicate_tenancy_period_photos(self.period.pk, target.pk, copied_paths=copied_paths)

        self.assertEqual(len(copies), 1)
        self.assertEqual(copies[0].label, "A")
        self.assertEqual(copies[0].sort_order, 0)
        self.assertNotEqual(copies[0].image_path, kept.image_path)
        self.assertEqual(copied_paths, [copies[0].image_path])
        with default_storage.open(copies[0].image_path, "rb") as handle:
            self.assertEqual(handle.read(), b"vorhanden")

    def test_rename_property_photos_moves_files(self):
        photo = self.service.add_photo(OWNER_PROPERTY, "Alte Straße 1", b"haus")
        with self.captureOnCommitCallbacks(execute=True):
            moved = self.service.rename_property_photos("Alte Straße 1", "Neue Straße 2")

        self.assertEqual(moved, 1)
        photo.refresh_from_db()
        self.assertEqual(photo.property_name, "Neue Straße 2")
        self.assertIn("/hausfotos/neue-strae-2/", photo.image_path)
        self.assertTrue(default_storage.exists(photo.image_path))
        self.assertEqual(self.service.photos(OWNER_PROPERTY, "Alte Straße 1"), [])

    def test_property_rename_carries_photos(self):
        prop = PropertyService().create_property(name="Hof 1", billing_year=2024)
        self.service.add_photo(OWNER_PROPERTY, "Hof 1", b"hof")
        PropertyService().update_property(prop.pk, name="Hof 3")
        self.assertEqual(len(self.service.photos(OWNER_PROPERTY, "Hof 3")), 1)


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT)
class InjectedStorageCascadeTests(NebenkostenTestMixin, TestCase):
    """Löschungen räumen die Dateien im übergebenen Speicher ab, nicht im Standardspeicher."""

    def setUp(self):
        self.location = tempfile.mkdtemp(prefix="nebenkosten-storage-")
        self.addCleanup(shutil.rmtree, self.location, ignore_errors=True)
        self.storage = FileSystemStorage(location=self.location)
        self.attachments = AttachmentService(storage=self.storage)

        self.property = self._create_property()
        self.unit = self._create_unit(self.property, "1")
        self.period = self._create_period(self.unit, date(2024, 1, 1), date(2024, 12, 31))
        self.reading = MeterReading.objects.create(
            unit=self.unit,
            meter_type="Strom",
            start_value=Decimal("100"),
            end_value=Decimal("150"),
        )
        self.item = CostItem.objects.create(property=self.property, category=CostItem.Category.GAS)

    def _photo(self, owner_kind, owner_key):
        photo = self.attachments.add_photo(owner_kind, owner_key, b"bild")
        self.assertTrue(self.storage.exists(photo.image_path))
        return photo

    def test_deleting_period_removes_files_from_injected_storage(self):
        photo = self._photo(OWNER_TENANCY_PERIOD, self.period.pk)
        with self.captureOnCommitCallbacks(execute=True):
            TenancyPeriodService(storage=self.storage).delete(self.period.pk)
        self.assertFalse(self.storage.exists(photo.image_path))

    def test_deleting_reading_removes_files_from_injected_storage(self):
        photo = self._photo(OWNER_METER_READING, self.reading.pk)
        with self.captureOnCommitCallbacks(execute=True):
            MeterReadingService(storage=self.storage).delete_reading(self.reading.pk)
        self.assertFalse(self.storage.exists(photo.image_path))

    def test_deleting_cost_item_removes_files_from_injected_storage(self):
        photo = self._photo(OWNER_COST_ITEM, self.item.pk)
        with self.captureOnCommitCallbacks(execute=True):
            CostItemService(storage=self.storage).delete_cost_item(self.item.pk)
        self.assertFalse(self.storage.exists(photo.image_path))

    def test_deleting_unit_removes_files_of_periods_and_readings(self):
        period_photo = self._photo(OWNER_TENANCY_PERIOD, self.period.pk)
        reading_photo = self._photo(OWNER_METER_READING, self.reading.pk)
        cost_photo = self._photo(OWNER_COST_ITEM, self.item.pk)

        with self.captureOnCommitCallbacks(execute=True):
            UnitService(storage=self.storage).delete_unit(self.unit.pk)

        self.assertFalse(self.storage.exists(period_photo.image_path))
        self.assertFalse(self.storage.exists(reading_photo.image_path))
        self.assertTrue(self.storage.exists(cost_photo.image_path))

    def test_deleting_property_removes_all_owned_files(self):
        paths = [
            self._photo(OWNER_TENANCY_PERIOD, self.period.pk).image_path,
            self._photo(OWNER_METER_READING, self.reading.pk).image_path,
            self._photo(OWNER_COST_ITEM, self.item.pk).image_path,
            self._photo(OWNER_PROPERTY, self.property.name).image_path,
        ]

        with self.captureOnCommitCallbacks(execute=True):
            PropertyService(storage=self.storage).delete_property(self.property.pk)

        for path in paths:
            self.assertFalse(self.storage.exists(path), path)

    def test_rolled_back_delete_keeps_files(self):
        photo = self._photo(OWNER_TENANCY_PERIOD, self.period.pk)
        service = UnitService(storage=self.storage)
        with patch.object(Unit, "delete", side_effect=DatabaseError("gesperrt")):
            with self.captureOnCommitCallbacks(execute=True) as callbacks:
                with self.assertRaises(StorageFailure):
                    service.delete_unit(self.unit.pk)
        self.assertEqual(callbacks, [])
        self.assertTrue(self.storage.exists(photo.image_path))

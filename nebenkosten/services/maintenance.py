from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from django.db import DEFAULT_DB_ALIAS
from django.db.models import Q
from django.db.models.functions import Trim

from nebenkosten.models import CostItem, Property
from nebenkosten.services.attachments import AttachmentService
from nebenkosten.services.cost_items import CostItemService
from nebenkosten.services.meter_readings import MeterReadingService
from nebenkosten.services.properties import PropertyService
from nebenkosten.services.tenancy_periods import TenancyPeriodService
from nebenkosten.services.transactions import atomic_stage
from nebenkosten.services.units import UnitService

MIN_BILLING_YEAR = 1900

SAMPLE_NAME = "Musterstraße 1"
SAMPLE_CITY = "Musterstadt"
SAMPLE_ZIP = "12345"

Category = CostItem.Category
Allocation = CostItem.AllocationMethod

# (Kostenart, Betrag, Bezeichnung, Verteilungsart)
SAMPLE_COST_ITEMS = (
    (Category.FRISCHWASSER, 450, None, Allocation.BY_CONSUMPTION),
    (Category.WARMWASSER, 380, None, Allocation.BY_CONSUMPTION),
    (Category.ABWASSER, 280, None, Allocation.BY_CONSUMPTION),
    (Category.ABFALL, 180, None, Allocation.BY_PERSON_COUNT),
    (Category.GRUNDSTEUER, 350, None, Allocation.BY_AREA),
    (Category.STROM, 620, None, Allocation.BY_CONSUMPTION),
    (Category.HAUSSTROM, 120, None, Allocation.BY_PERSON_COUNT),
    (Category.KABEL, 80, None, Allocation.BY_UNIT_COUNT),
    (Category.NIEDERSCHLAGSWASSER, 120, None, Allocation.BY_AREA),
    (Category.VERSICHERUNG, 200, None, Allocation.BY_AREA),
    (Category.SCHORNSTEINFEGER, 0, None, Allocation.BY_INDIVIDUAL_PROOF),
    (Category.STRASSENREINIGUNG, 95, None, Allocation.BY_AREA),
    (Category.GAS, 1100, None, Allocation.BY_CONSUMPTION),
    (Category.VORAUSZAHLUNG, 0, None, Allocation.BY_INDIVIDUAL_PROOF),
    (Category.SONSTIGES, 0, "Muster Sonstiges", Allocation.BY_INDIVIDUAL_PROOF),
)

# Einzelnachweise je Kostenart für (Wohnung 1, Folge-Mieter Wohnung 1, Wohnung 2)
SAMPLE_PROOFS = {
    Category.VORAUSZAHLUNG: (200, 200, 200),
    Category.SONSTIGES: (17, 17, 16),
    Category.SCHORNSTEINFEGER: (50, 50, 50),
}


@dataclass(frozen=True)
class CleanupResult:
    candidates: list[Property]
    deleted: int


class MaintenanceService:
    logger = logging.getLogger(__name__)

    def __init__(self, *, using: str = DEFAULT_DB_ALIAS, storage=None):
        self.using = using
        self.storage = storage

    def incomplete_properties(self):
        return (
            Property.objects.using(self.using)
            .annotate(trimmed_name=Trim("name"))
            .filter(Q(trimmed_name="") | Q(billing_year__lt=MIN_BILLING_YEAR))
            .order_by("id")
        )

    def delete_incomplete_properties(self, *, apply: bool = True) -> CleanupResult:
        """Entfernt Hausabrechnungen ohne Bezeichnung oder mit ungültigem Jahr."""
        candidates = list(self.incomplete_properties())
        if not apply or not candidates:
            return CleanupResult(candidates=candidates, deleted=0)
        with atomic_stage("Bereinigen", self.using):
            attachments = AttachmentService(storage=self.storage, using=self.using)
            for prop in candidates:
                attachments.delete_owned_files_on_commit(prop)
            Property.objects.using(self.using).filter(pk__in=[prop.pk for prop in candidates]).delete()
        self.logger.info("Bereinigen: %s unvollständige Hausabrechnung(en) entfernt.", len(candidates))
        return CleanupResult(candidates=candidates, deleted=len(candidates))

    def create_sample_property(self, billing_year: int) -> Property:
        """Legt das Musterhaus „Musterstraße 1“ mit Wohnungen, Mietern, Zählern und Kosten an."""
        year = int(billing_year)
        properties = PropertyService(using=self.using, storage=self.storage)
        units = UnitService(using=self.using, storage=self.storage)
        periods = TenancyPeriodService(using=self.using, storage=self.storage)
        readings = MeterReadingService(using=self.using, storage=self.storage)
        costs = CostItemService(using=self.using, storage=self.storage)

        with atomic_stage("Musterhaus anlegen", self.using):
            prop = properties.create_property(
                name=SAMPLE_NAME,
                billing_year=year,
                zip_code=SAMPLE_ZIP,
                city=SAMPLE_CITY,
                total_area=110,
                unit_count=2,
                vacancy_check=Property.VacancyCheck.NEIN,
                manager_name="Muster-Verwaltung GmbH",
                manager_street="Verwalterstraße 1",
                manager_zip_city="12345 Musterstadt",
                manager_email="info@muster-verwaltung.de",
                manager_phone="0123 456789",
                manager_in_email=False,
            )
            contact = {"street": SAMPLE_NAME, "zip_code": SAMPLE_ZIP, "city": SAMPLE_CITY}
            unit_1 = units.create_unit(
                prop.pk,
                apartment_number="1",
                label="Muster-Wohnung 1",
                floor_area=50,
                tenant_name="Muster-Mieter 1",
                **contact,
            )
            unit_1_next = units.create_unit(
                prop.pk,
                apartment_number="1",
                label="Muster-Wohnung 1",
                floor_area=50,
                tenant_name="Muster-Folge-Mieter",
                **contact,
            )
            unit_2 = units.create_unit(
                prop.pk,
                apartment_number="2",
                label="Muster-Wohnung 2",
                floor_area=60,
                tenant_name="Muster-Mieter 2",
                **contact,
            )

            for unit, tenant, start, end, persons in (
                (unit_1, "Muster-Mieter 1", (1, 1), (5, 31), 2),
                (unit_1, "Muster-Mieter 1", (6, 1), (9, 30), 1),
                (unit_1_next, "Muster-Folge-Mieter", (10, 1), (12, 31), 3),
                (unit_2, "Muster-Mieter 2a", (1, 1), (6, 30), 1),
                (unit_2, "Muster-Mieter 2b", (7, 1), (12, 31), 1),
            ):
                periods.create(
                    unit_id=unit.pk,
                    year=year,
                    head_tenant_name=tenant,
                    start_date=date(year, *start),
                    end_date=date(year, *end),
                    persons=persons,
                )

            for unit, suffix, offset in ((unit_1, "001", 100), (unit_1_next, "001b", 152), (unit_2, "002", 80)):
                self._sample_meters(readings, unit.pk, suffix, Decimal(offset))

            items = {}
            for category, amount, label, allocation in SAMPLE_COST_ITEMS:
                items[category] = costs.create_cost_item(
                    prop.pk,
                    category=category,
                    amount=amount,
                    label=label,
                    allocation_method=allocation,
                )
            for category, amounts in SAMPLE_PROOFS.items():
                for unit, amount in zip((unit_1, unit_1_next, unit_2), amounts):
                    costs.upsert_individual_proof(items[category].pk, unit.pk, amount=amount)

        self.logger.info("Musterhaus %s angelegt.", prop)
        return prop

    @staticmethod
    def _sample_meters(readings: MeterReadingService, unit_id: int, suffix: str, offset: Decimal) -> None:
        for meter_type, number, start, end, wastewater, description in (
            ("Frischwasser", f"FW-{suffix}a", offset, offset + Decimal("42.5"), True, None),
            (
                "Frischwasser",
                f"FW-{suffix}b",
                offset + 10,
                offset + Decimal("28.3"),
                False,
                "Gartenwasser kein Abwasser",
            ),
            ("Warmwasser", f"WW-{suffix}", offset + 100, offset + Decimal("127.8"), None, None),
            ("Strom", f"ST-{suffix}", offset * 10, offset * 10 + 1250, None, None),
            ("Gas", f"GA-{suffix}", offset * 5, offset * 5 + 890, None, None),
            ("Sonstiges", f"SO-{suffix}", offset + 50, offset + Decimal("73.2"), None, None),
        ):
            readings.create_reading(
                unit_id,
                meter_type=meter_type,
                meter_number=number,
                start_value=start,
                end_value=end,
                counts_as_wastewater=wastewater,
                description=description,
            )

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from django.db import DEFAULT_DB_ALIAS, IntegrityError

from nebenkosten.exceptions import DuplicatePeriod, NotFound, ValidationConflict
from nebenkosten.models import CoTenant, CostItem, MeterReading, Property, TenancyPeriod, Unit
from nebenkosten.services.attachments import AttachmentService
from nebenkosten.services.meter_readings import meter_key
from nebenkosten.services.tenancy_periods import TenancyPeriodService
from nebenkosten.services.transactions import atomic_stage, failure_stage

PROPERTY_COPY_FIELDS = (
    "zip_code",
    "city",
    "total_area",
    "unit_count",
    "vacancy_check",
    "manager_name",
    "manager_street",
    "manager_zip_city",
    "manager_email",
    "manager_phone",
    "manager_in_email",
)

UNIT_COPY_FIELDS = (
    "apartment_number",
    "label",
    "floor_area",
    "tenant_name",
    "street",
    "zip_code",
    "city",
    "email",
    "phone",
)


@dataclass(frozen=True)
class RolloverResult:
    property_id: int
    property: Property
    carried_units: int = 0
    carried_periods: int = 0
    carried_co_tenants: int = 0
    copied_photos: int = 0
    carried_cost_items: int = 0
    carried_readings: int = 0


class RolloverService:
    """Jahreswechsel: legt aus einer Hausabrechnung die des Folgejahres an.

    Übernommen werden nur Wohnungen mit einem Mietzeitraum bis zum 31.12., der
    nicht zum Mietzeitende gekündigt ist, dazu die Kostenpositionen mit Betrag 0
    und je Zähler der letzte Stand als neuer Start. Alles läuft in einer
    Transaktion; bei einem Fehler werden bereits kopierte Dateien wieder entfernt.
    """

    logger = logging.getLogger(__name__)

    def __init__(self, *, using: str = DEFAULT_DB_ALIAS, storage=None):
        self.using = using
        self.periods = TenancyPeriodService(using=using, storage=storage)
        self.attachments = AttachmentService(storage=storage, using=using)

    def is_year_locked(self, name: str, year: int) -> bool:
        """Ein Jahr ist gesperrt, sobald für dasselbe Haus ein späteres Jahr existiert."""
        return Property.objects.using(self.using).filter(name=name, billing_year__gt=year).exists()

    @staticmethod
    def _is_carry_forward(period: TenancyPeriod, year_end: date) -> bool:
        return (
            period.end_date == year_end
            and period.end_mode != TenancyPeriod.EndMode.TERMINATED_AT_PERIOD_END
        )

    def rollover(self, property_id: int) -> RolloverResult:
        try:
            source = Property.objects.using(self.using).get(pk=property_id)
        except Property.DoesNotExist as exc:
            raise NotFound(f"Hausabrechnung {property_id} existiert nicht.") from exc

        target_year = int(source.billing_year) + 1
        self.logger.info("Jahreswechsel %s: %s -> %s", source.name, source.billing_year, target_year)
        copied_paths: list[str] = []
        try:
            with atomic_stage("Jahreswechsel", self.using):
                with failure_stage("Zieljahr prüfen"):
                    self._guard(source, target_year)
                with failure_stage("Hausabrechnung kopieren"):
                    target = self._clone_property(source, target_year)
                with failure_stage("Wohnungen übernehmen"):
                    unit_map = self._carry_units(source, target)
                with failure_stage("Mietzeiträume übernehmen"):
                    period_counts = self._carry_periods(source, target, unit_map, copied_paths)
                with failure_stage("Kostenpositionen übernehmen"):
                    cost_items = self._carry_cost_items(source, target)
                with failure_stage("Zählerstände übernehmen"):
                    readings = self._carry_meter_readings(unit_map)
        except ValidationConflict:
            self._remove_copied_files(copied_paths)
            self.logger.warning("Jahreswechsel für %s abgelehnt.", source, exc_info=True)
            raise
        except Exception:
            self._remove_copied_files(copied_paths)
            self.logger.exception("Jahreswechsel für %s fehlgeschlagen.", source)
            raise

        result = RolloverResult(
            property_id=target.pk,
            property=target,
            carried_units=len(unit_map),
            carried_cost_items=cost_items,
            carried_readings=readings,
            **period_counts,
        )
        self.logger.info(
            "Jahreswechsel %s abgeschlossen: %s Wohnungen, %s Mietzeiträume, %s Kostenpositionen, "
            "%s Zählerstände.",
            target,
            result.carried_units,
            result.carried_periods,
            result.carried_cost_items,
            result.carried_readings,
        )
        return result

    def _remove_copied_files(self, paths: list[str]) -> None:
        for path in paths:
            try:
                self.attachments.delete_file(path)
            except OSError:
                self.logger.warning("Kopierte Datei %s konnte nicht entfernt werden.", path, exc_info=True)

    def _duplicate(self, source: Property, target_year: int) -> DuplicatePeriod:
        return DuplicatePeriod(
            f"Für dieses Haus existiert bereits ein Eintrag für das Jahr {target_year}.",
            code="duplicate_year",
            params={"name": source.name, "billing_year": target_year},
        )

    def _guard(self, source: Property, target_year: int) -> None:
        if Property.objects.using(self.using).filter(name=source.name, billing_year=target_year).exists():
            raise self._duplicate(source, target_year)

    def _clone_property(self, source: Property, target_year: int) -> Property:
        target = Property(
            name=source.name,
            billing_year=target_year,
            **{field_name: getattr(source, field_name) for field_name in PROPERTY_COPY_FIELDS},
        )
        try:
            target.save(using=self.using)
        except IntegrityError as exc:
            raise self._duplicate(source, target_year) from exc
        return target

    def _carry_units(self, source: Property, target: Property) -> dict[int, Unit]:
        carried_ids = {
            period.unit_id
            for period in TenancyPeriod.objects.using(self.using).filter(
                unit__property=source,
                end_date=source.year_end,
            )
            if self._is_carry_forward(period, source.year_end)
        }
        unit_map: dict[int, Unit] = {}
        for unit in Unit.objects.using(self.using).filter(pk__in=carried_ids).order_by("id"):
            new_unit = Unit(
                property=target,
                **{field_name: getattr(unit, field_name) for field_name in UNIT_COPY_FIELDS},
            )
            new_unit.save(using=self.using)
            unit_map[unit.pk] = new_unit
        return unit_map

    def _carry_periods(
        self,
        source: Property,
        target: Property,
        unit_map: dict[int, Unit],
        copied_paths: list[str],
    ) -> dict[str, int]:
        counts = {"carried_periods": 0, "carried_co_tenants": 0, "copied_photos": 0}
        for old_unit_id, new_unit in unit_map.items():
            eligible = [
                period
                for period in TenancyPeriod.objects.using(self.using).filter(
                    unit_id=old_unit_id,
                    end_date=source.year_end,
                )
                if self._is_carry_forward(period, source.year_end)
            ]
            by_tenant: dict[str, list[TenancyPeriod]] = defaultdict(list)
            for period in eligible:
                by_tenant[period.head_tenant_name].append(period)

            for tenant_name in sorted(by_tenant):
                latest = max(by_tenant[tenant_name], key=lambda period: period.pk)
                new_period = self.periods.insert(
                    unit_id=new_unit.pk,
                    year=target.billing_year,
                    head_tenant_name=latest.head_tenant_name,
                    start_date=target.year_start,
                    end_date=target.year_end,
                    persons=latest.persons,
                    persons_description=latest.persons_description,
                    end_mode=latest.end_mode,
                )
                counts["carried_periods"] += 1

                for co_tenant in CoTenant.objects.using(self.using).filter(tenancy_period=latest).order_by("id"):
                    CoTenant(
                        tenancy_period=new_period,
                        name=co_tenant.name,
                        start_date=target.year_start,
                        end_date=target.year_end,
                    ).save(using=self.using)
                    counts["carried_co_tenants"] += 1

                photos = self.attachments.duplicate_tenancy_period_photos(
                    latest.pk,
                    new_period.pk,
                    copied_paths=copied_paths,
                )
                counts["copied_photos"] += len(photos)
        return counts

    def _carry_cost_items(self, source: Property, target: Property) -> int:
        count = 0
        for item in CostItem.objects.using(self.using).filter(property=source).order_by("id"):
            CostItem(
                property=target,
                category=item.category,
                amount=Decimal("0.00"),
                label=item.label,
                allocation_method=item.allocation_method,
            ).save(using=self.using)
            count += 1
        return count

    def _carry_meter_readings(self, unit_map: dict[int, Unit]) -> int:
        count = 0
        for old_unit_id, new_unit in unit_map.items():
            groups: dict[tuple[str, str], list[MeterReading]] = defaultdict(list)
            for reading in MeterReading.objects.using(self.using).filter(unit_id=old_unit_id):
                groups[meter_key(reading)].append(reading)

            for key in sorted(groups):
                last = max(groups[key], key=lambda reading: (reading.end_value, reading.pk))
                MeterReading(
                    unit=new_unit,
                    meter_type=last.meter_type,
                    meter_number=last.meter_number,
                    start_value=last.end_value,
                    end_value=last.end_value,
                    counts_as_wastewater=last.counts_as_wastewater,
                    description=last.description,
                ).save(using=self.using)
                count += 1
        return count

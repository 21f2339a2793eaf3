from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Iterable

from django.db import DEFAULT_DB_ALIAS

from nebenkosten.exceptions import NotFound, ValidationConflict
from nebenkosten.models import CoTenant, TenancyPeriod
from nebenkosten.services.apartment_identity import ApartmentIdentityService
from nebenkosten.services.attachments import AttachmentService
from nebenkosten.services.transactions import atomic_stage

PERIOD_FIELDS = (
    "head_tenant_name",
    "start_date",
    "end_date",
    "persons",
    "persons_description",
    "end_mode",
    "year",
)


def _format_date(value: date) -> str:
    return value.strftime("%d.%m.%Y")


class TenancyPeriodValidator:
    """Prüfungen über alle Mietphasen einer Wohnung (Liste von Unit-ids)."""

    def __init__(self, *, using: str = DEFAULT_DB_ALIAS):
        self.using = using

    def _periods(self, unit_ids: Iterable[int], exclude_id: int | None = None):
        queryset = TenancyPeriod.objects.using(self.using).filter(unit_id__in=list(unit_ids))
        if exclude_id is not None:
            queryset = queryset.exclude(pk=exclude_id)
        return queryset

    def conflicting_period(
        self,
        unit_ids: Iterable[int],
        start: date,
        end: date,
        exclude_id: int | None = None,
    ) -> TenancyPeriod | None:
        # Geschlossene Intervalle: gleicher Tag an der Grenze ist eine Überschneidung.
        return (
            self._periods(unit_ids, exclude_id)
            .filter(start_date__lte=end, end_date__gte=start)
            .order_by("start_date", "-id")
            .first()
        )

    def previous_period(
        self,
        unit_ids: Iterable[int],
        before: date,
        exclude_id: int | None = None,
    ) -> TenancyPeriod | None:
        return (
            self._periods(unit_ids, exclude_id)
            .filter(end_date__lt=before)
            .order_by("-end_date", "-id")
            .first()
        )

    def next_period(
        self,
        unit_ids: Iterable[int],
        after: date,
        exclude_id: int | None = None,
    ) -> TenancyPeriod | None:
        return (
            self._periods(unit_ids, exclude_id)
            .filter(start_date__gt=after)
            .order_by("start_date", "-id")
            .first()
        )

    def latest_period(self, unit_id: int) -> TenancyPeriod | None:
        return self._periods([unit_id]).order_by("-end_date", "-id").first()

    def latest_period_for_apartment(
        self,
        property_id: int,
        apartment_number: str,
    ) -> TenancyPeriod | None:
        return (
            TenancyPeriod.objects.using(self.using)
            .filter(unit__property_id=property_id, unit__apartment_number=apartment_number)
            .order_by("-end_date", "-id")
            .first()
        )


class TenancyPeriodService:
    def __init__(self, *, using: str = DEFAULT_DB_ALIAS, storage=None):
        self.using = using
        self.attachments = AttachmentService(storage=storage, using=using)
        self.identity = ApartmentIdentityService(using=using)
        self.validator = TenancyPeriodValidator(using=using)

    @staticmethod
    def _normalize_end_mode(value) -> str:
        if value in (None, ""):
            return TenancyPeriod.EndMode.OPEN_ENDED
        try:
            return TenancyPeriod.EndMode(value)
        except ValueError as exc:
            raise ValidationConflict(
                f"Unbekannte Art des Mietendes: {value}",
                code="invalid_end_mode",
            ) from exc

    @staticmethod
    def _normalize_persons(value) -> Decimal:
        try:
            persons = Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValidationConflict(
                f"Ungültige Personenanzahl: {value}",
                code="invalid_persons",
            ) from exc
        if persons < 0:
            raise ValidationConflict("Die Personenanzahl darf nicht negativ sein.", code="invalid_persons")
        return persons

    @staticmethod
    def check_range(start: date, end: date) -> None:
        if start > end:
            raise ValidationConflict(
                f"Das Mietende ({_format_date(end)}) liegt vor dem Mietbeginn ({_format_date(start)}).",
                code="invalid_range",
            )

    def ensure_no_conflict(
        self,
        unit_id: int,
        start: date,
        end: date,
        exclude_id: int | None = None,
    ) -> None:
        unit_ids = self.identity.logical_apartment_unit_ids(unit_id)
        conflict = self.validator.conflicting_period(unit_ids, start, end, exclude_id=exclude_id)
        if conflict is None:
            return
        raise ValidationConflict(
            "Der Mietzeitraum überschneidet sich mit dem Zeitraum von "
            f"{conflict.head_tenant_name} ({_format_date(conflict.start_date)} – "
            f"{_format_date(conflict.end_date)}).",
            code="overlap",
        )

    def get(self, period_id: int) -> TenancyPeriod:
        try:
            return TenancyPeriod.objects.using(self.using).get(pk=period_id)
        except TenancyPeriod.DoesNotExist as exc:
            raise NotFound(f"Mietzeitraum {period_id} existiert nicht.") from exc

    def periods_for_unit(self, unit_id: int) -> list[TenancyPeriod]:
        return list(
            TenancyPeriod.objects.using(self.using).filter(unit_id=unit_id).order_by("start_date", "id")
        )

    def insert(
        self,
        *,
        unit_id: int,
        head_tenant_name: str,
        start_date: date,
        end_date: date,
        persons=Decimal("1"),
        persons_description: str | None = None,
        end_mode=TenancyPeriod.EndMode.OPEN_ENDED,
        year: int | None = None,
    ) -> TenancyPeriod:
        """Legt einen Mietzeitraum an; die Transaktion öffnet der Aufrufer."""
        self.check_range(start_date, end_date)
        self.ensure_no_conflict(unit_id, start_date, end_date)
        period = TenancyPeriod(
            unit_id=unit_id,
            year=year or start_date.year,
            head_tenant_name=(head_tenant_name or "").strip(),
            start_date=start_date,
            end_date=end_date,
            persons=self._normalize_persons(persons),
            persons_description=persons_description,
            end_mode=self._normalize_end_mode(end_mode),
        )
        period.save(using=self.using)
        return period

    def create(self, **kwargs) -> TenancyPeriod:
        with atomic_stage("Mietzeitraum anlegen", self.using):
            return self.insert(**kwargs)

    def update(self, period_id: int, **changes) -> TenancyPeriod:
        unknown = set(changes) - set(PERIOD_FIELDS)
        if unknown:
            raise TypeError(f"Unbekannte Felder: {', '.join(sorted(unknown))}")
        with atomic_stage("Mietzeitraum ändern", self.using):
            period = self.get(period_id)
            for field_name, value in changes.items():
                if field_name == "persons":
                    value = self._normalize_persons(value)
                elif field_name == "end_mode":
                    value = self._normalize_end_mode(value)
                setattr(period, field_name, value)
            if "start_date" in changes and "year" not in changes:
                period.year = period.start_date.year
            self.check_range(period.start_date, period.end_date)
            self.ensure_no_conflict(
                period.unit_id,
                period.start_date,
                period.end_date,
                exclude_id=period.pk,
            )
            period.save(using=self.using)
            return period

    def delete(self, period_id: int) -> None:
        with atomic_stage("Mietzeitraum löschen", self.using):
            period = self.get(period_id)
            self.attachments.delete_owned_files_on_commit(period)
            period.delete(using=self.using)

    def co_tenants(self, period_id: int) -> list[CoTenant]:
        return list(
            CoTenant.objects.using(self.using).filter(tenancy_period_id=period_id).order_by("start_date", "id")
        )

    def add_co_tenant(
        self,
        period_id: int,
        *,
        name: str,
        start_date: date,
        end_date: date,
    ) -> CoTenant:
        self.check_range(start_date, end_date)
        with atomic_stage("Mitmieter anlegen", self.using):
            period = self.get(period_id)
            co_tenant = CoTenant(
                tenancy_period=period,
                name=(name or "").strip(),
                start_date=start_date,
                end_date=end_date,
            )
            co_tenant.save(using=self.using)
            return co_tenant

    def update_co_tenant(self, co_tenant_id: int, **changes) -> CoTenant:
        unknown = set(changes) - {"name", "start_date", "end_date"}
        if unknown:
            raise TypeError(f"Unbekannte Felder: {', '.join(sorted(unknown))}")
        with atomic_stage("Mitmieter ändern", self.using):
            co_tenant = self._get_co_tenant(co_tenant_id)
            for field_name, value in changes.items():
                setattr(co_tenant, field_name, value)
            self.check_range(co_tenant.start_date, co_tenant.end_date)
            co_tenant.name = (co_tenant.name or "").strip()
            co_tenant.save(using=self.using)
            return co_tenant

    def delete_co_tenant(self, co_tenant_id: int) -> None:
        with atomic_stage("Mitmieter löschen", self.using):
            self._get_co_tenant(co_tenant_id).delete(using=self.using)

    def _get_co_tenant(self, co_tenant_id: int) -> CoTenant:
        try:
            return CoTenant.objects.using(self.using).get(pk=co_tenant_id)
        except CoTenant.DoesNotExist as exc:
            raise NotFound(f"Mitmieter {co_tenant_id} existiert nicht.") from exc

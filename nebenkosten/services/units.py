from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from django.db import DEFAULT_DB_ALIAS

from nebenkosten.exceptions import NotFound, ValidationConflict
from nebenkosten.models import Property, TenancyPeriod, Unit
from nebenkosten.services.apartment_identity import ApartmentIdentityService
from nebenkosten.services.attachments import AttachmentService
from nebenkosten.services.tenancy_periods import TenancyPeriodValidator
from nebenkosten.services.transactions import atomic_stage

UNIT_FIELDS = (
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
class UnitCreationDecision:
    allowed: bool
    reason: str | None = None


class UnitCreationGuard:
    """Verhindert eine zweite Wohnung gleicher Nummer, solange die bisherige über das Jahresende läuft."""

    def __init__(self, *, using: str = DEFAULT_DB_ALIAS):
        self.using = using
        self.identity = ApartmentIdentityService(using=using)
        self.validator = TenancyPeriodValidator(using=using)

    def can_create_unit(
        self,
        apartment_number: str | None,
        property_id: int,
        billing_year: int,
    ) -> UnitCreationDecision:
        number = (apartment_number or "").strip()
        if not number:
            return UnitCreationDecision(allowed=True)
        if not self.identity.unit_ids_for_number(property_id, number):
            return UnitCreationDecision(allowed=True)
        latest = self.validator.latest_period_for_apartment(property_id, number)
        if latest is None:
            return UnitCreationDecision(allowed=True)
        year_end = date(int(billing_year), 12, 31)
        if latest.end_date >= year_end and latest.end_mode != TenancyPeriod.EndMode.TERMINATED_AT_PERIOD_END:
            return UnitCreationDecision(
                allowed=False,
                reason=(
                    f"Es existiert bereits eine Wohnung mit der Nummer „{number}“.\n\n"
                    f"Deren Mietzeitende ({latest.end_date:%d.%m.%Y}) liegt am oder nach dem "
                    f"31.12.{billing_year}. Anlage nicht möglich.\n\n"
                    "Bitte beim bestehenden Mietzeitraum das Mietende (Auszugsdatum) anpassen, "
                    "damit eine weitere Wohnung mit dieser Nummer angelegt werden kann."
                ),
            )
        return UnitCreationDecision(allowed=True)


class UnitService:
    def __init__(self, *, using: str = DEFAULT_DB_ALIAS, storage=None):
        self.using = using
        self.guard = UnitCreationGuard(using=using)
        self.attachments = AttachmentService(storage=storage, using=using)

    def get(self, unit_id: int) -> Unit:
        try:
            return Unit.objects.using(self.using).get(pk=unit_id)
        except Unit.DoesNotExist as exc:
            raise NotFound(f"Wohnung {unit_id} existiert nicht.") from exc

    def units_for_property(self, property_id: int) -> list[Unit]:
        return list(Unit.objects.using(self.using).filter(property_id=property_id).order_by("id"))

    def create_unit(self, property_id: int, *, label: str, apartment_number: str = "", **fields) -> Unit:
        unknown = set(fields) - set(UNIT_FIELDS)
        if unknown:
            raise TypeError(f"Unbekannte Felder: {', '.join(sorted(unknown))}")
        with atomic_stage("Wohnung anlegen", self.using):
            try:
                prop = Property.objects.using(self.using).get(pk=property_id)
            except Property.DoesNotExist as exc:
                raise NotFound(f"Hausabrechnung {property_id} existiert nicht.") from exc
            decision = self.guard.can_create_unit(apartment_number, prop.pk, prop.billing_year)
            if not decision.allowed:
                raise ValidationConflict(decision.reason, code="unit_blocked")
            unit = Unit(property=prop, label=(label or "").strip(), apartment_number=apartment_number, **fields)
            unit.save(using=self.using)
            return unit

    def update_unit(self, unit_id: int, **changes) -> Unit:
        unknown = set(changes) - set(UNIT_FIELDS)
        if unknown:
            raise TypeError(f"Unbekannte Felder: {', '.join(sorted(unknown))}")
        with atomic_stage("Wohnung ändern", self.using):
            unit = self.get(unit_id)
            old_number = unit.apartment_number
            if "apartment_number" in changes:
                new_number = (changes["apartment_number"] or "").strip()
                if new_number != old_number:
                    # Neue Nummer: dieselbe Sperre wie bei einer neu angelegten Wohnung.
                    decision = self.guard.can_create_unit(new_number, unit.property_id, unit.property.billing_year)
                    if not decision.allowed:
                        raise ValidationConflict(decision.reason, code="unit_blocked")
            for field_name, value in changes.items():
                setattr(unit, field_name, value)
            unit.save(using=self.using)
            if unit.apartment_number != old_number:
                self._ensure_periods_fit_apartment(unit)
            return unit

    def _ensure_periods_fit_apartment(self, unit: Unit) -> None:
        # Die Mietzeiträume dürfen sich mit den anderen Mietphasen nicht überschneiden.
        sibling_ids = [
            unit_id
            for unit_id in self.guard.identity.unit_ids_for_number(unit.property_id, unit.apartment_number)
            if unit_id != unit.pk
        ]
        if not sibling_ids:
            return
        for period in TenancyPeriod.objects.using(self.using).filter(unit_id=unit.pk):
            conflict = self.guard.validator.conflicting_period(sibling_ids, period.start_date, period.end_date)
            if conflict is not None:
                raise ValidationConflict(
                    f"Unter der Nummer „{unit.apartment_number}“ überschneidet sich der Mietzeitraum "
                    f"von {period.head_tenant_name} mit dem von {conflict.head_tenant_name}.",
                    code="overlap",
                )

    def delete_unit(self, unit_id: int) -> None:
        with atomic_stage("Wohnung löschen", self.using):
            unit = self.get(unit_id)
            self.attachments.delete_owned_files_on_commit(unit)
            unit.delete(using=self.using)

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from django.db import DEFAULT_DB_ALIAS
from django.db.models import Q

from nebenkosten.exceptions import NotFound, ValidationConflict
from nebenkosten.models import MeterReading, Unit
from nebenkosten.services.apartment_identity import ApartmentIdentityService
from nebenkosten.services.attachments import AttachmentService
from nebenkosten.services.transactions import atomic_stage

READING_FIELDS = (
    "meter_type",
    "meter_number",
    "start_value",
    "end_value",
    "counts_as_wastewater",
    "description",
)


def meter_key(reading: MeterReading) -> tuple[str, str]:
    return reading.meter_type, reading.meter_number or ""


def _to_decimal(value, field_label: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationConflict(f"Ungültiger {field_label}: {value}", code="invalid_value") from exc


class MeterReadingService:
    def __init__(self, *, using: str = DEFAULT_DB_ALIAS, storage=None):
        self.using = using
        self.attachments = AttachmentService(storage=storage, using=using)
        self.identity = ApartmentIdentityService(using=using)

    def _readings(self):
        return MeterReading.objects.using(self.using)

    def get(self, reading_id: int) -> MeterReading:
        try:
            return self._readings().get(pk=reading_id)
        except MeterReading.DoesNotExist as exc:
            raise NotFound(f"Zählerstand {reading_id} existiert nicht.") from exc

    def readings_for_unit(self, unit_id: int) -> list[MeterReading]:
        return list(self._readings().filter(unit_id=unit_id).order_by("meter_type", "id"))

    def create_reading(
        self,
        unit_id: int,
        *,
        meter_type: str,
        start_value,
        end_value,
        meter_number: str | None = None,
        counts_as_wastewater: bool | None = None,
        description: str | None = None,
    ) -> MeterReading:
        meter_type = (meter_type or "").strip()
        if not meter_type:
            raise ValidationConflict("Der Zählertyp fehlt.", code="missing_meter_type")
        with atomic_stage("Zählerstand anlegen", self.using):
            if not Unit.objects.using(self.using).filter(pk=unit_id).exists():
                raise NotFound(f"Wohnung {unit_id} existiert nicht.")
            reading = MeterReading(
                unit_id=unit_id,
                meter_type=meter_type,
                meter_number=meter_number,
                start_value=_to_decimal(start_value, "Zählerstand Start"),
                end_value=_to_decimal(end_value, "Zählerstand Ende"),
                counts_as_wastewater=counts_as_wastewater,
                description=description,
            )
            reading.save(using=self.using)
            return reading

    def update_reading(self, reading_id: int, **changes) -> MeterReading:
        unknown = set(changes) - set(READING_FIELDS)
        if unknown:
            raise TypeError(f"Unbekannte Felder: {', '.join(sorted(unknown))}")
        with atomic_stage("Zählerstand ändern", self.using):
            reading = self.get(reading_id)
            for field_name, value in changes.items():
                if field_name == "start_value":
                    value = _to_decimal(value, "Zählerstand Start")
                elif field_name == "end_value":
                    value = _to_decimal(value, "Zählerstand Ende")
                setattr(reading, field_name, value)
            reading.save(using=self.using)
            return reading

    def delete_reading(self, reading_id: int) -> None:
        with atomic_stage("Zählerstand löschen", self.using):
            reading = self.get(reading_id)
            self.attachments.delete_owned_files_on_commit(reading)
            reading.delete(using=self.using)

    def previous_reading(
        self,
        unit_id: int,
        meter_type: str,
        meter_number: str | None = None,
    ) -> MeterReading | None:
        """Vorschlag vom Vormieter, solange die Wohnung noch keinen eigenen Zählerstand hat."""
        if self._readings().filter(unit_id=unit_id).exists():
            return None
        predecessor = self.identity.previous_episode(unit_id)
        if predecessor is None:
            return None
        queryset = self._readings().filter(unit_id=predecessor.pk, meter_type=meter_type)
        number = (meter_number or "").strip()
        if number:
            queryset = queryset.filter(Q(meter_number=number) | Q(meter_number__isnull=True))
        return queryset.order_by("-end_value", "-id").first()

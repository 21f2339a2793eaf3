from __future__ import annotations

from dataclasses import dataclass

from django.db import DEFAULT_DB_ALIAS
from django.db.models import Sum

from nebenkosten.exceptions import NotFound
from nebenkosten.models import Property, Unit
from nebenkosten.services.apartment_identity import ApartmentIdentityService


@dataclass(frozen=True)
class AreaMatch:
    matches: bool
    declared_area: int | None
    actual_sum: int


@dataclass(frozen=True)
class ReconciliationResult:
    success: bool
    error_message: str | None = None
    success_message: str | None = None


class UnitReconciliationService:
    """Gleicht die angegebene Wohnungsanzahl und Gesamtfläche mit den Wohnungen ab.

    Mehrere Mietphasen derselben Wohnungsnummer zählen einmal; maßgeblich ist
    jeweils die Zeile mit der höchsten id.
    """

    def __init__(self, *, using: str = DEFAULT_DB_ALIAS):
        self.using = using
        self.identity = ApartmentIdentityService(using=using)

    def _get_property(self, property_id: int) -> Property:
        try:
            return Property.objects.using(self.using).get(pk=property_id)
        except Property.DoesNotExist as exc:
            raise NotFound(f"Hausabrechnung {property_id} existiert nicht.") from exc

    def unit_count(self, property_id: int) -> int:
        return len(self.identity.current_episode_ids(property_id))

    def area_sum(self, property_id: int) -> int:
        current_ids = self.identity.current_episode_ids(property_id)
        if not current_ids:
            return 0
        total = (
            Unit.objects.using(self.using)
            .filter(pk__in=current_ids)
            .aggregate(total=Sum("floor_area"))
            .get("total")
        )
        return int(total or 0)

    def check_area_match(self, property_id: int) -> AreaMatch:
        prop = self._get_property(property_id)
        actual = self.area_sum(property_id)
        declared = prop.total_area
        if declared is None:
            return AreaMatch(matches=True, declared_area=None, actual_sum=actual)
        return AreaMatch(matches=declared == actual, declared_area=declared, actual_sum=actual)

    def validate(self, property_id: int) -> ReconciliationResult:
        prop = self._get_property(property_id)
        checked: list[str] = []

        if prop.unit_count is not None:
            actual_count = self.unit_count(property_id)
            if actual_count != prop.unit_count:
                return ReconciliationResult(
                    success=False,
                    error_message=(
                        "Die Anzahl der Wohnungen stimmt nicht überein.\n\n"
                        f"Erwartet: {prop.unit_count}\n"
                        f"Tatsächlich: {actual_count}"
                    ),
                )
            checked.append(f"✓ Anzahl Wohnungen: {actual_count}")

        area = self.check_area_match(property_id)
        if area.declared_area is not None:
            if not area.matches:
                return ReconciliationResult(
                    success=False,
                    error_message=(
                        "Die Gesamtfläche stimmt nicht überein.\n\n"
                        f"Erwartet: {area.declared_area} qm\n"
                        f"Tatsächlich: {area.actual_sum} qm"
                    ),
                )
            checked.append(f"✓ Gesamtfläche: {area.actual_sum} qm")

        if not checked:
            return ReconciliationResult(success=True)
        return ReconciliationResult(
            success=True,
            success_message="Alle Prüfungen erfolgreich:\n\n" + "\n".join(checked),
        )

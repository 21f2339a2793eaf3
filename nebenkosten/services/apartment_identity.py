from __future__ import annotations

from django.db import DEFAULT_DB_ALIAS

from nebenkosten.exceptions import NotFound
from nebenkosten.models import Unit


def apartment_key(unit: Unit) -> tuple[int, str]:
    """Eine Wohnung ist (Hausabrechnung, Wohnungsnummer); leere Nummer bildet eine eigene Gruppe."""
    return unit.property_id, (unit.apartment_number or "")


class ApartmentIdentityService:
    def __init__(self, *, using: str = DEFAULT_DB_ALIAS):
        self.using = using

    def _units(self):
        return Unit.objects.using(self.using)

    def _get_unit(self, unit_id: int) -> Unit:
        try:
            return self._units().only("id", "property_id", "apartment_number").get(pk=unit_id)
        except Unit.DoesNotExist as exc:
            raise NotFound(f"Wohnung {unit_id} existiert nicht.") from exc

    def logical_apartment_unit_ids(self, unit_id: int) -> list[int]:
        unit = self._get_unit(unit_id)
        return self.unit_ids_for_number(*apartment_key(unit))

    def unit_ids_for_number(self, property_id: int, apartment_number: str | None) -> list[int]:
        return list(
            self._units()
            .filter(property_id=property_id, apartment_number=(apartment_number or "").strip())
            .order_by("id")
            .values_list("id", flat=True)
        )

    def previous_episode(self, unit_id: int) -> Unit | None:
        """Vormieter-Wohnung: die neueste Zeile derselben Wohnung mit kleinerer id."""
        unit = self._get_unit(unit_id)
        property_id, number = apartment_key(unit)
        if not number:
            return None
        return (
            self._units()
            .filter(property_id=property_id, apartment_number=number, id__lt=unit.pk)
            .order_by("-id")
            .first()
        )

    def current_episode_ids(self, property_id: int) -> list[int]:
        """Höchste id je Wohnungsnummer; die aktuelle Mietphase jeder Wohnung."""
        latest: dict[str, int] = {}
        rows = (
            self._units()
            .filter(property_id=property_id)
            .order_by("id")
            .values_list("id", "apartment_number")
        )
        for unit_id, number in rows:
            latest[number or ""] = max(unit_id, latest.get(number or "", unit_id))
        return sorted(latest.values())

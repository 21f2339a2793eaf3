from __future__ import annotations

from django.db import DEFAULT_DB_ALIAS, IntegrityError

from nebenkosten.exceptions import DuplicatePeriod, NotFound
from nebenkosten.models import Property, PropertyPhoto
from nebenkosten.services.attachments import AttachmentService
from nebenkosten.services.transactions import atomic_stage

PROPERTY_FIELDS = (
    "name",
    "billing_year",
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


class PropertyService:
    def __init__(self, *, using: str = DEFAULT_DB_ALIAS, storage=None):
        self.using = using
        self.attachments = AttachmentService(storage=storage, using=using)

    def _properties(self):
        return Property.objects.using(self.using)

    def get(self, property_id: int) -> Property:
        try:
            return self._properties().get(pk=property_id)
        except Property.DoesNotExist as exc:
            raise NotFound(f"Hausabrechnung {property_id} existiert nicht.") from exc

    @staticmethod
    def _duplicate(name: str, billing_year: int) -> DuplicatePeriod:
        return DuplicatePeriod(
            f"Für dieses Haus existiert bereits ein Eintrag für das Jahr {billing_year}.",
            code="duplicate_year",
            params={"name": name, "billing_year": billing_year},
        )

    def create_property(self, *, name: str, billing_year: int, **fields) -> Property:
        unknown = set(fields) - set(PROPERTY_FIELDS)
        if unknown:
            raise TypeError(f"Unbekannte Felder: {', '.join(sorted(unknown))}")
        name = (name or "").strip()
        if self._properties().filter(name=name, billing_year=billing_year).exists():
            raise self._duplicate(name, billing_year)
        with atomic_stage("Hausabrechnung anlegen", self.using):
            prop = Property(name=name, billing_year=billing_year, **fields)
            try:
                prop.save(using=self.using)
            except IntegrityError as exc:
                raise self._duplicate(name, billing_year) from exc
        return prop

    def update_property(self, property_id: int, **changes) -> Property:
        unknown = set(changes) - set(PROPERTY_FIELDS)
        if unknown:
            raise TypeError(f"Unbekannte Felder: {', '.join(sorted(unknown))}")
        with atomic_stage("Hausabrechnung ändern", self.using):
            prop = self.get(property_id)
            old_name = prop.name
            for field_name, value in changes.items():
                setattr(prop, field_name, value)
            prop.name = (prop.name or "").strip()
            duplicate = (
                self._properties()
                .filter(name=prop.name, billing_year=prop.billing_year)
                .exclude(pk=prop.pk)
                .exists()
            )
            if duplicate:
                raise self._duplicate(prop.name, prop.billing_year)
            prop.save(using=self.using)
            # Hausfotos gehören dem Namen; sie ziehen mit, sobald kein Jahr den alten Namen mehr trägt.
            if prop.name != old_name and not self._properties().filter(name=old_name).exists():
                self.attachments.rename_property_photos(old_name, prop.name)
            return prop

    def delete_property(self, property_id: int) -> None:
        with atomic_stage("Hausabrechnung löschen", self.using):
            prop = self.get(property_id)
            name = prop.name
            self.attachments.delete_owned_files_on_commit(prop)
            prop.delete(using=self.using)
            if not self._properties().filter(name=name).exists():
                for photo in PropertyPhoto.objects.using(self.using).filter(property_name=name):
                    photo._attachment_storage = self.attachments.storage
                    photo.delete(using=self.using)

    def years_for_name(self, name: str) -> list[int]:
        return list(
            self._properties().filter(name=name).order_by("billing_year").values_list("billing_year", flat=True)
        )

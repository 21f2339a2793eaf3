from __future__ import annotations

import logging

from django.core.files import File
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.db import DEFAULT_DB_ALIAS, transaction
from django.db.models import Max

from nebenkosten.exceptions import NotFound
from nebenkosten.models import (
    CostItem,
    CostItemPhoto,
    MeterReading,
    MeterReadingPhoto,
    Property,
    PropertyPhoto,
    TenancyPeriod,
    TenancyPeriodPhoto,
    Unit,
)
from nebenkosten.services.transactions import atomic_stage, failure_stage
from nebenkosten.storage_paths import (
    KIND_COST_ITEM,
    KIND_METER_READING,
    KIND_PROPERTY,
    KIND_TENANCY_PERIOD,
    build_photo_path,
    relocate_photo_path,
)

OWNER_PROPERTY = "property"
OWNER_TENANCY_PERIOD = "tenancy_period"
OWNER_COST_ITEM = "cost_item"
OWNER_METER_READING = "meter_reading"

# Besitzerart -> (Modell, Schlüsselfeld, Speicherverzeichnis)
OWNER_KINDS = {
    OWNER_PROPERTY: (PropertyPhoto, "property_name", KIND_PROPERTY),
    OWNER_TENANCY_PERIOD: (TenancyPeriodPhoto, "tenancy_period_id", KIND_TENANCY_PERIOD),
    OWNER_COST_ITEM: (CostItemPhoto, "cost_item_id", KIND_COST_ITEM),
    OWNER_METER_READING: (MeterReadingPhoto, "meter_reading_id", KIND_METER_READING),
}

# Löschkaskade: Besitzermodell -> (Fotomodell, Filter auf den Besitzer)
CASCADED_PHOTOS = {
    Property: (
        (TenancyPeriodPhoto, "tenancy_period__unit__property"),
        (CostItemPhoto, "cost_item__property"),
        (MeterReadingPhoto, "meter_reading__unit__property"),
    ),
    Unit: (
        (TenancyPeriodPhoto, "tenancy_period__unit"),
        (MeterReadingPhoto, "meter_reading__unit"),
    ),
    TenancyPeriod: ((TenancyPeriodPhoto, "tenancy_period"),),
    CostItem: ((CostItemPhoto, "cost_item"),),
    MeterReading: ((MeterReadingPhoto, "meter_reading"),),
}


class AttachmentService:
    logger = logging.getLogger(__name__)

    def __init__(self, *, storage=None, using: str = DEFAULT_DB_ALIAS):
        self.storage = storage or default_storage
        self.using = using

    @staticmethod
    def _owner(owner_kind: str):
        try:
            return OWNER_KINDS[owner_kind]
        except KeyError as exc:
            raise ValueError(f"Unbekannte Anhangsart: {owner_kind}") from exc

    # Dateien

    def write_file(self, path: str, content: bytes) -> str:
        return self.storage.save(path, ContentFile(content))

    def copy_file(self, source_path: str, target_path: str) -> str:
        with self.storage.open(source_path, "rb") as handle:
            return self.storage.save(target_path, File(handle))

    def delete_file(self, path: str) -> None:
        if path and self.storage.exists(path):
            self.storage.delete(path)

    def file_exists(self, path: str) -> bool:
        return bool(path) and self.storage.exists(path)

    def _delete_files_on_commit(self, paths: list[str]) -> None:
        def _cleanup():
            for path in paths:
                try:
                    self.delete_file(path)
                except OSError:
                    self.logger.warning("Datei %s konnte nicht gelöscht werden.", path, exc_info=True)

        transaction.on_commit(_cleanup, using=self.using)

    def delete_owned_files_on_commit(self, owner) -> list[str]:
        """Merkt die Dateien aller Fotos vor, die mit ``owner`` per Kaskade gelöscht werden.

        Muss vor dem Löschen und innerhalb der Transaktion des Aufrufers laufen;
        entfernt wird erst nach dem Commit, und zwar aus ``self.storage``.
        """
        paths: list[str] = []
        for model, lookup in CASCADED_PHOTOS.get(type(owner), ()):
            rows = model.objects.using(self.using).filter(**{lookup: owner.pk}).values_list("image_path", flat=True)
            paths.extend(path for path in rows if path)
        if paths:
            self._delete_files_on_commit(paths)
        return paths

    # Datensätze

    def photos(self, owner_kind: str, owner_key) -> list:
        model, key_field, _ = self._owner(owner_kind)
        return list(
            model.objects.using(self.using).filter(**{key_field: owner_key}).order_by("sort_order", "id")
        )

    def get_photo(self, owner_kind: str, photo_id: int):
        model, _, _ = self._owner(owner_kind)
        try:
            return model.objects.using(self.using).get(pk=photo_id)
        except model.DoesNotExist as exc:
            raise NotFound(f"Foto {photo_id} existiert nicht.") from exc

    def add_photo(
        self,
        owner_kind: str,
        owner_key,
        content: bytes,
        *,
        label: str = "",
        extension: str | None = None,
    ):
        model, key_field, storage_kind = self._owner(owner_kind)
        with failure_stage("Foto speichern"):
            saved_path = self.write_file(build_photo_path(storage_kind, owner_key, extension=extension), content)
        try:
            with atomic_stage("Foto speichern", self.using):
                highest = (
                    model.objects.using(self.using)
                    .filter(**{key_field: owner_key})
                    .aggregate(highest=Max("sort_order"))
                    .get("highest")
                )
                photo = model(
                    image_path=saved_path,
                    sort_order=0 if highest is None else highest + 1,
                    label=(label or "").strip(),
                    **{key_field: owner_key},
                )
                photo.save(using=self.using)
        except Exception:
            self.delete_file(saved_path)
            raise
        return photo

    def relabel_photo(self, owner_kind: str, photo_id: int, label: str):
        with atomic_stage("Foto umbenennen", self.using):
            photo = self.get_photo(owner_kind, photo_id)
            photo.label = (label or "").strip()
            photo.save(using=self.using, update_fields=["label"])
            return photo

    def delete_photo(self, owner_kind: str, photo_id: int) -> None:
        with atomic_stage("Foto löschen", self.using):
            photo = self.get_photo(owner_kind, photo_id)
            # Die Datei entfernt der post_delete-Handler nach dem Commit.
            photo._attachment_storage = self.storage
            photo.delete(using=self.using)

    def duplicate_tenancy_period_photos(
        self,
        source_period_id: int,
        target_period_id: int,
        *,
        copied_paths: list[str] | None = None,
    ) -> list[TenancyPeriodPhoto]:
        """Kopiert die Dateien der Fotos in das Verzeichnis des neuen Mietzeitraums.

        Fehlende Quelldateien werden übersprungen. Die Transaktion öffnet der
        Aufrufer; kopierte Pfade landen in ``copied_paths``, damit er sie bei
        einem Abbruch wieder entfernen kann.
        """
        created: list[TenancyPeriodPhoto] = []
        for photo in self.photos(OWNER_TENANCY_PERIOD, source_period_id):
            if not self.file_exists(photo.image_path):
                self.logger.warning(
                    "Foto %s von Mietzeitraum %s fehlt im Speicher und wird nicht kopiert.",
                    photo.image_path,
                    source_period_id,
                )
                continue
            saved_path = self.copy_file(
                photo.image_path,
                build_photo_path(KIND_TENANCY_PERIOD, target_period_id),
            )
            if copied_paths is not None:
                copied_paths.append(saved_path)
            copy = TenancyPeriodPhoto(
                tenancy_period_id=target_period_id,
                image_path=saved_path,
                sort_order=len(created),
                label=photo.label,
            )
            copy.save(using=self.using)
            created.append(copy)
        return created

    def rename_property_photos(self, old_name: str, new_name: str) -> int:
        """Verschiebt die Hausfotos in das Verzeichnis des neuen Hausnamens."""
        if old_name == new_name:
            return 0
        moved = 0
        copied: list[str] = []
        obsolete: list[str] = []
        try:
            with atomic_stage("Hausfotos verschieben", self.using):
                for photo in self.photos(OWNER_PROPERTY, old_name):
                    new_path = relocate_photo_path(photo.image_path, KIND_PROPERTY, new_name)
                    if self.file_exists(photo.image_path):
                        new_path = self.copy_file(photo.image_path, new_path)
                        copied.append(new_path)
                        obsolete.append(photo.image_path)
                    photo.property_name = new_name
                    photo.image_path = new_path
                    photo.save(using=self.using, update_fields=["property_name", "image_path"])
                    moved += 1
                self._delete_files_on_commit(obsolete)
        except Exception:
            for path in copied:
                self.delete_file(path)
            raise
        return moved

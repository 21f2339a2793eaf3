import logging

from django.core.files.storage import default_storage
from django.db import transaction
from django.db.models.signals import post_delete
from django.dispatch import receiver

from nebenkosten.models import (
    CostItemPhoto,
    MeterReadingPhoto,
    PropertyPhoto,
    TenancyPeriodPhoto,
)

logger = logging.getLogger(__name__)

# Abweichender Speicher für einzelne Löschungen, z. B. aus AttachmentService.
_STORAGE_ATTR = "_attachment_storage"


def _delete_file(storage, image_path: str) -> None:
    try:
        if storage.exists(image_path):
            storage.delete(image_path)
    except OSError:
        logger.warning("Anhang %s konnte nicht gelöscht werden.", image_path, exc_info=True)


def _schedule_file_delete(instance, using) -> None:
    image_path = (instance.image_path or "").strip()
    if not image_path:
        return
    storage = getattr(instance, _STORAGE_ATTR, None) or default_storage
    transaction.on_commit(lambda: _delete_file(storage, image_path), using=using)


@receiver(post_delete, sender=PropertyPhoto)
@receiver(post_delete, sender=TenancyPeriodPhoto)
@receiver(post_delete, sender=CostItemPhoto)
@receiver(post_delete, sender=MeterReadingPhoto)
def attachment_post_delete_remove_file(sender, instance, using, **kwargs):
    _schedule_file_delete(instance, using)

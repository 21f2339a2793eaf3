from __future__ import annotations

from contextlib import contextmanager

from django.db import DEFAULT_DB_ALIAS, DatabaseError, transaction

from nebenkosten.exceptions import IOFailure, StorageFailure, ValidationConflict


@contextmanager
def failure_stage(stage: str):
    """Übersetzt Speicher- und Dateifehler in die Fehler der App und benennt den Schritt."""
    try:
        yield
    except ValidationConflict as exc:
        if exc.stage is None:
            exc.stage = stage
        raise
    except (StorageFailure, IOFailure):
        raise
    except DatabaseError as exc:
        raise StorageFailure(f"Datenbankfehler: {exc}", stage=stage) from exc
    except OSError as exc:
        raise IOFailure(f"Dateifehler: {exc}", stage=stage) from exc


@contextmanager
def atomic_stage(stage: str, using: str | None = None):
    with failure_stage(stage):
        with transaction.atomic(using=using or DEFAULT_DB_ALIAS):
            yield

from __future__ import annotations

from django.core.exceptions import ObjectDoesNotExist, ValidationError


class NebenkostenError(Exception):
    """Basis für Fehler, die nicht aus der Validierung stammen."""

    def __init__(self, message: str, *, stage: str | None = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"{self.message} (Schritt: {self.stage})"
        return self.message


class ValidationConflict(ValidationError):
    """Fachlicher Konflikt, z. B. überlappende Mietzeiträume."""

    def __init__(self, message, code=None, params=None, *, stage: str | None = None):
        super().__init__(message, code=code, params=params)
        self.stage = stage


class DuplicatePeriod(ValidationConflict):
    """Für das Haus existiert das Abrechnungsjahr bereits."""


class NotFound(ObjectDoesNotExist):
    pass


class StorageFailure(NebenkostenError):
    """Datenbankfehler beim Schreiben oder Lesen."""


class IOFailure(NebenkostenError):
    """Dateifehler im Anhangs-Speicher."""

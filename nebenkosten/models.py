from builtins import property as builtin_property
from datetime import date
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.utils.translation import gettext_lazy as _
from simple_history.models import HistoricalRecords


def normalize_optional_text(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class TolerantChoiceField(models.CharField):
    """CharField für geschlossene Aufzählungen.

    Gespeicherte Werte, die keiner Auswahl (mehr) entsprechen, werden beim Lesen
    auf ``fallback`` abgebildet statt einen Fehler auszulösen.
    """

    def __init__(self, *args, enum=None, fallback=None, **kwargs):
        self.enum = enum
        self.fallback = fallback
        if enum is not None:
            kwargs.setdefault("choices", enum.choices)
        super().__init__(*args, **kwargs)

    def deconstruct(self):
        name, path, args, kwargs = super().deconstruct()
        if self.enum is not None:
            kwargs["enum"] = self.enum
        if self.fallback is not None:
            kwargs["fallback"] = self.fallback
        return name, path, args, kwargs

    def decode(self, value):
        if value is None or value == "":
            return self.fallback
        if self.enum is None:
            return value
        try:
            return self.enum(value)
        except ValueError:
            return self.fallback

    def from_db_value(self, value, expression, connection):
        return self.decode(value)


class OptionalTextMixin:
    optional_text_fields: tuple[str, ...] = ()

    def normalize_optional_text_fields(self) -> None:
        for field_name in self.optional_text_fields:
            setattr(self, field_name, normalize_optional_text(getattr(self, field_name)))

    def save(self, *args, **kwargs):
        self.normalize_optional_text_fields()
        super().save(*args, **kwargs)


class Property(OptionalTextMixin, models.Model):
    class VacancyCheck(models.TextChoices):
        JA = "Ja (Leerstandszeiten an Vermieter)", _("Ja (Leerstandszeiten an Vermieter)")
        NEIN = "Nein (alle Kosten tragen die Mieter)", _("Nein (alle Kosten tragen die Mieter)")

    optional_text_fields = (
        "zip_code",
        "city",
        "manager_name",
        "manager_street",
        "manager_zip_city",
        "manager_email",
        "manager_phone",
    )

    name = models.CharField(max_length=255, verbose_name=_("Hausbezeichnung"))
    billing_year = models.PositiveIntegerField(verbose_name=_("Abrechnungsjahr"))
    zip_code = models.CharField(max_length=20, null=True, blank=True, verbose_name=_("Postleitzahl"))
    city = models.CharField(max_length=100, null=True, blank=True, verbose_name=_("Ort"))
    total_area = models.PositiveIntegerField(
        null=True,
        blank=True,
        verbose_name=_("Gesamtfläche (qm)"),
        help_text=_("Wird gegen die Summe der Wohnungsflächen geprüft."),
    )
    unit_count = models.PositiveIntegerField(
        null=True,
        blank=True,
        verbose_name=_("Anzahl Wohnungen"),
        help_text=_("Wird gegen die Anzahl der angelegten Wohnungen geprüft."),
    )
    vacancy_check = TolerantChoiceField(
        max_length=60,
        enum=VacancyCheck,
        null=True,
        blank=True,
        verbose_name=_("Leerstandsprüfung"),
    )

    manager_name = models.CharField(max_length=255, null=True, blank=True, verbose_name=_("Verwalter"))
    manager_street = models.CharField(
        max_length=255, null=True, blank=True, verbose_name=_("Verwalter Straße")
    )
    manager_zip_city = models.CharField(
        max_length=255, null=True, blank=True, verbose_name=_("Verwalter PLZ/Ort")
    )
    manager_email = models.CharField(
        max_length=255, null=True, blank=True, verbose_name=_("Verwalter E-Mail")
    )
    manager_phone = models.CharField(
        max_length=50, null=True, blank=True, verbose_name=_("Verwalter Telefon")
    )
    manager_in_email = models.BooleanField(
        null=True,
        blank=True,
        verbose_name=_("Verwalter in E-Mail vorbelegen"),
    )

    class Meta:
        verbose_name = _("Hausabrechnung")
        verbose_name_plural = _("Hausabrechnungen")
        ordering = ["name", "billing_year", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["name", "billing_year"],
                name="property_name_year_unique",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.name} ({self.billing_year})"

    def save(self, *args, **kwargs):
        self.name = (self.name or "").strip()
        super().save(*args, **kwargs)

    @builtin_property
    def year_start(self) -> date:
        return date(int(self.billing_year), 1, 1)

    @builtin_property
    def year_end(self) -> date:
        return date(int(self.billing_year), 12, 31)


class Unit(OptionalTextMixin, models.Model):
    optional_text_fields = ("tenant_name", "street", "zip_code", "city", "email", "phone")

    property = models.ForeignKey(
        Property,
        on_delete=models.CASCADE,
        related_name="units",
        verbose_name=_("Hausabrechnung"),
    )
    apartment_number = models.CharField(
        max_length=50,
        blank=True,
        default="",
        verbose_name=_("Wohnungsnummer"),
        help_text=_("Gleiche Nummer im selben Haus = dieselbe Wohnung (mehrere Mietphasen)."),
    )
    label = models.CharField(max_length=255, verbose_name=_("Bezeichnung"))
    floor_area = models.PositiveIntegerField(default=0, verbose_name=_("Wohnfläche (qm)"))

    tenant_name = models.CharField(max_length=255, null=True, blank=True, verbose_name=_("Name"))
    street = models.CharField(max_length=255, null=True, blank=True, verbose_name=_("Straße"))
    zip_code = models.CharField(max_length=20, null=True, blank=True, verbose_name=_("Postleitzahl"))
    city = models.CharField(max_length=100, null=True, blank=True, verbose_name=_("Ort"))
    email = models.CharField(max_length=255, null=True, blank=True, verbose_name=_("E-Mail"))
    phone = models.CharField(max_length=50, null=True, blank=True, verbose_name=_("Telefon"))

    class Meta:
        verbose_name = _("Wohnung")
        verbose_name_plural = _("Wohnungen")
        ordering = ["id"]
        indexes = [
            models.Index(fields=["property", "apartment_number"], name="unit_property_number_idx"),
        ]

    def __str__(self) -> str:
        if self.apartment_number:
            return f"{self.label} (Nr. {self.apartment_number})"
        return self.label

    def save(self, *args, **kwargs):
        self.apartment_number = (self.apartment_number or "").strip()
        super().save(*args, **kwargs)


class TenancyPeriod(OptionalTextMixin, models.Model):
    class EndMode(models.TextChoices):
        OPEN_ENDED = "mietendeOffen", _("Mietende offen")
        FIXED_END = "festesEnde", _("Festes Mietende")
        TERMINATED_AT_PERIOD_END = "gekuendigtZumMietzeitende", _("Gekündigt zum Mietzeitende")

    optional_text_fields = ("persons_description",)

    unit = models.ForeignKey(
        Unit,
        on_delete=models.CASCADE,
        related_name="tenancy_periods",
        verbose_name=_("Wohnung"),
    )
    year = models.PositiveIntegerField(verbose_name=_("Jahr"))
    head_tenant_name = models.CharField(max_length=255, verbose_name=_("Hauptmieter"))
    start_date = models.DateField(verbose_name=_("Von"))
    end_date = models.DateField(verbose_name=_("Bis"))
    persons = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal("1.00"),
        validators=[MinValueValidator(0)],
        verbose_name=_("Anzahl Personen"),
    )
    persons_description = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        verbose_name=_("Personenbeschreibung"),
        help_text=_("Bei Dezimalwerten, z. B. „1 Bewohner, 1 Kind Wechselmodell“."),
    )
    end_mode = TolerantChoiceField(
        max_length=40,
        enum=EndMode,
        fallback=EndMode.OPEN_ENDED,
        default=EndMode.OPEN_ENDED,
        verbose_name=_("Mietende"),
    )
    history = HistoricalRecords()

    class Meta:
        verbose_name = _("Mietzeitraum")
        verbose_name_plural = _("Mietzeiträume")
        ordering = ["start_date", "id"]
        indexes = [
            models.Index(fields=["unit", "end_date"], name="period_unit_end_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.head_tenant_name} {self.start_date:%d.%m.%Y}–{self.end_date:%d.%m.%Y}"

    def clean(self):
        super().clean()
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValidationError(
                {"end_date": _("Das Mietende darf nicht vor dem Mietbeginn liegen.")}
            )

    def save(self, *args, **kwargs):
        if not self.year and self.start_date:
            self.year = self.start_date.year
        super().save(*args, **kwargs)

    @builtin_property
    def is_terminated(self) -> bool:
        return self.end_mode == self.EndMode.TERMINATED_AT_PERIOD_END


class CoTenant(models.Model):
    tenancy_period = models.ForeignKey(
        TenancyPeriod,
        on_delete=models.CASCADE,
        related_name="co_tenants",
        verbose_name=_("Mietzeitraum"),
    )
    name = models.CharField(max_length=255, verbose_name=_("Name"))
    start_date = models.DateField(verbose_name=_("Von"))
    end_date = models.DateField(verbose_name=_("Bis"))

    class Meta:
        verbose_name = _("Mitmieter")
        verbose_name_plural = _("Mitmieter")
        ordering = ["start_date", "id"]

    def __str__(self) -> str:
        return self.name


class MeterReading(OptionalTextMixin, models.Model):
    optional_text_fields = ("meter_number", "description")

    unit = models.ForeignKey(
        Unit,
        on_delete=models.CASCADE,
        related_name="meter_readings",
        verbose_name=_("Wohnung"),
    )
    meter_type = models.CharField(
        max_length=50,
        db_index=True,
        verbose_name=_("Zählertyp"),
        help_text=_("z. B. Frischwasser, Warmwasser, Strom, Gas."),
    )
    meter_number = models.CharField(max_length=50, null=True, blank=True, verbose_name=_("Zählernummer"))
    start_value = models.DecimalField(max_digits=12, decimal_places=3, verbose_name=_("Zählerstand Start"))
    end_value = models.DecimalField(max_digits=12, decimal_places=3, verbose_name=_("Zählerstand Ende"))
    delta = models.DecimalField(
        max_digits=12,
        decimal_places=3,
        default=Decimal("0"),
        editable=False,
        verbose_name=_("Differenz"),
        help_text=_("Wird bei jedem Speichern als Ende minus Start berechnet."),
    )
    counts_as_wastewater = models.BooleanField(
        null=True,
        blank=True,
        verbose_name=_("Auch Abwasser"),
    )
    description = models.CharField(max_length=255, null=True, blank=True, verbose_name=_("Beschreibung"))

    class Meta:
        verbose_name = _("Zählerstand")
        verbose_name_plural = _("Zählerstände")
        ordering = ["meter_type", "id"]

    def __str__(self) -> str:
        return f"{self.meter_type} {self.meter_number or '???'}: {self.start_value} → {self.end_value}"

    def save(self, *args, **kwargs):
        self.delta = Decimal(str(self.end_value)) - Decimal(str(self.start_value))
        super().save(*args, **kwargs)


class CostItem(OptionalTextMixin, models.Model):
    class Category(models.TextChoices):
        ABFALL = "Abfall", _("Abfall")
        FRISCHWASSER = "Frischwasser", _("Frischwasser")
        WARMWASSER = "Warmwasser", _("Warmwasser")
        ABWASSER = "Abwasser", _("Abwasser")
        STROM = "Strom", _("Strom")
        HAUSSTROM = "Hausstrom", _("Hausstrom")
        GAS = "Gas", _("Gas")
        VERSICHERUNG = "Sach/Haftpflicht-Versicherung", _("Sach/Haftpflicht-Versicherung")
        GRUNDSTEUER = "Grundsteuer", _("Grundsteuer")
        STRASSENREINIGUNG = "Strassenreinigung", _("Strassenreinigung")
        NIEDERSCHLAGSWASSER = "Niederschlagswasser", _("Niederschlagswasser")
        KABEL = "Kabel", _("Kabel")
        SCHORNSTEINFEGER = "Schornsteinfeger", _("Schornsteinfeger")
        HEIZUNGSWARTUNG = "Heizungswartung", _("Heizungswartung")
        VORAUSZAHLUNG = "Vorauszahlung", _("Vorauszahlung")
        SONSTIGES = "Sonstiges", _("Sonstiges")

    class AllocationMethod(models.TextChoices):
        BY_AREA = "nach Qm", _("nach Qm")
        BY_CONSUMPTION = "nach Verbrauch", _("nach Verbrauch")
        BY_PERSON_COUNT = "nach Personen", _("nach Personen")
        BY_UNIT_COUNT = "nach Wohneinheiten", _("nach Wohneinheiten")
        BY_INDIVIDUAL_PROOF = "nach Einzelnachweis", _("nach Einzelnachweis")

    optional_text_fields = ("label",)

    property = models.ForeignKey(
        Property,
        on_delete=models.CASCADE,
        related_name="cost_items",
        verbose_name=_("Hausabrechnung"),
    )
    category = TolerantChoiceField(
        max_length=40,
        enum=Category,
        fallback=Category.SONSTIGES,
        verbose_name=_("Kostenart"),
    )
    amount = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal("0.00"),
        verbose_name=_("Betrag"),
    )
    label = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        verbose_name=_("Bezeichnung"),
        help_text=_("Optional, besonders bei „Sonstiges“."),
    )
    allocation_method = TolerantChoiceField(
        max_length=30,
        enum=AllocationMethod,
        fallback=AllocationMethod.BY_AREA,
        default=AllocationMethod.BY_AREA,
        verbose_name=_("Verteilungsart"),
    )

    class Meta:
        verbose_name = _("Kostenposition")
        verbose_name_plural = _("Kostenpositionen")
        ordering = ["id"]

    def __str__(self) -> str:
        if self.label:
            return f"{self.category}: {self.label}"
        return str(self.category)


class IndividualProof(models.Model):
    cost_item = models.ForeignKey(
        CostItem,
        on_delete=models.CASCADE,
        related_name="individual_proofs",
        verbose_name=_("Kostenposition"),
    )
    unit = models.ForeignKey(
        Unit,
        on_delete=models.CASCADE,
        related_name="individual_proofs",
        verbose_name=_("Wohnung"),
    )
    proof_date = models.DateField(null=True, blank=True, verbose_name=_("Von"))
    amount = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        verbose_name=_("Betrag"),
    )

    class Meta:
        verbose_name = _("Einzelnachweis")
        verbose_name_plural = _("Einzelnachweise")
        constraints = [
            models.UniqueConstraint(
                fields=["cost_item", "unit"],
                name="individual_proof_item_unit_unique",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.cost_item} · {self.unit}: {self.amount}"


class Attachment(models.Model):
    image_path = models.CharField(
        max_length=500,
        verbose_name=_("Dateipfad"),
        help_text=_("Relativer Pfad im Anhangs-Speicher."),
    )
    sort_order = models.PositiveIntegerField(default=0, verbose_name=_("Reihenfolge"))
    label = models.CharField(max_length=255, blank=True, default="", verbose_name=_("Bildbezeichnung"))

    class Meta:
        abstract = True
        ordering = ["sort_order", "id"]

    def __str__(self) -> str:
        return self.label or self.image_path


class PropertyPhoto(Attachment):
    """Foto eines Hauses; alle Abrechnungsjahre desselben Hauses teilen die Fotos."""

    property_name = models.CharField(max_length=255, db_index=True, verbose_name=_("Hausbezeichnung"))

    class Meta(Attachment.Meta):
        verbose_name = _("Hausfoto")
        verbose_name_plural = _("Hausfotos")


class TenancyPeriodPhoto(Attachment):
    tenancy_period = models.ForeignKey(
        TenancyPeriod,
        on_delete=models.CASCADE,
        related_name="photos",
        verbose_name=_("Mietzeitraum"),
    )

    class Meta(Attachment.Meta):
        verbose_name = _("Mietzeitraum-Foto")
        verbose_name_plural = _("Mietzeitraum-Fotos")


class CostItemPhoto(Attachment):
    cost_item = models.ForeignKey(
        CostItem,
        on_delete=models.CASCADE,
        related_name="photos",
        verbose_name=_("Kostenposition"),
    )

    class Meta(Attachment.Meta):
        verbose_name = _("Kosten-Foto")
        verbose_name_plural = _("Kosten-Fotos")


class MeterReadingPhoto(Attachment):
    meter_reading = models.ForeignKey(
        MeterReading,
        on_delete=models.CASCADE,
        related_name="photos",
        verbose_name=_("Zählerstand"),
    )

    class Meta(Attachment.Meta):
        verbose_name = _("Zählerstand-Foto")
        verbose_name_plural = _("Zählerstand-Fotos")

import decimal

import django.core.validators
import django.db.models.deletion
import simple_history.models
from django.conf import settings
from django.db import migrations, models

import nebenkosten.models


VACANCY_CHECK_CHOICES = [
    ("Ja (Leerstandszeiten an Vermieter)", "Ja (Leerstandszeiten an Vermieter)"),
    ("Nein (alle Kosten tragen die Mieter)", "Nein (alle Kosten tragen die Mieter)"),
]

END_MODE_CHOICES = [
    ("mietendeOffen", "Mietende offen"),
    ("festesEnde", "Festes Mietende"),
    ("gekuendigtZumMietzeitende", "Gekündigt zum Mietzeitende"),
]

CATEGORY_CHOICES = [
    ("Abfall", "Abfall"),
    ("Frischwasser", "Frischwasser"),
    ("Warmwasser", "Warmwasser"),
    ("Abwasser", "Abwasser"),
    ("Strom", "Strom"),
    ("Hausstrom", "Hausstrom"),
    ("Gas", "Gas"),
    ("Sach/Haftpflicht-Versicherung", "Sach/Haftpflicht-Versicherung"),
    ("Grundsteuer", "Grundsteuer"),
    ("Strassenreinigung", "Strassenreinigung"),
    ("Niederschlagswasser", "Niederschlagswasser"),
    ("Kabel", "Kabel"),
    ("Schornsteinfeger", "Schornsteinfeger"),
    ("Heizungswartung", "Heizungswartung"),
    ("Vorauszahlung", "Vorauszahlung"),
    ("Sonstiges", "Sonstiges"),
]

ALLOCATION_CHOICES = [
    ("nach Qm", "nach Qm"),
    ("nach Verbrauch", "nach Verbrauch"),
    ("nach Personen", "nach Personen"),
    ("nach Wohneinheiten", "nach Wohneinheiten"),
    ("nach Einzelnachweis", "nach Einzelnachweis"),
]


def attachment_fields():
    return [
        ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
        (
            "image_path",
            models.CharField(
                help_text="Relativer Pfad im Anhangs-Speicher.",
                max_length=500,
                verbose_name="Dateipfad",
            ),
        ),
        ("sort_order", models.PositiveIntegerField(default=0, verbose_name="Reihenfolge")),
        ("label", models.CharField(blank=True, default="", max_length=255, verbose_name="Bildbezeichnung")),
    ]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Property",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255, verbose_name="Hausbezeichnung")),
                ("billing_year", models.PositiveIntegerField(verbose_name="Abrechnungsjahr")),
                ("zip_code", models.CharField(blank=True, max_length=20, null=True, verbose_name="Postleitzahl")),
                ("city", models.CharField(blank=True, max_length=100, null=True, verbose_name="Ort")),
                (
                    "total_area",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Wird gegen die Summe der Wohnungsflächen geprüft.",
                        null=True,
                        verbose_name="Gesamtfläche (qm)",
                    ),
                ),
                (
                    "unit_count",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Wird gegen die Anzahl der angelegten Wohnungen geprüft.",
                        null=True,
                        verbose_name="Anzahl Wohnungen",
                    ),
                ),
                (
                    "vacancy_check",
                    nebenkosten.models.TolerantChoiceField(
                        blank=True,
                        choices=VACANCY_CHECK_CHOICES,
                        enum=nebenkosten.models.Property.VacancyCheck,
                        max_length=60,
                        null=True,
                        verbose_name="Leerstandsprüfung",
                    ),
                ),
                ("manager_name", models.CharField(blank=True, max_length=255, null=True, verbose_name="Verwalter")),
                (
                    "manager_street",
                    models.CharField(blank=True, max_length=255, null=True, verbose_name="Verwalter Straße"),
                ),
                (
                    "manager_zip_city",
                    models.CharField(blank=True, max_length=255, null=True, verbose_name="Verwalter PLZ/Ort"),
                ),
                (
                    "manager_email",
                    models.CharField(blank=True, max_length=255, null=True, verbose_name="Verwalter E-Mail"),
                ),
                (
                    "manager_phone",
                    models.CharField(blank=True, max_length=50, null=True, verbose_name="Verwalter Telefon"),
                ),
                (
                    "manager_in_email",
                    models.BooleanField(blank=True, null=True, verbose_name="Verwalter in E-Mail vorbelegen"),
                ),
            ],
            options={
                "verbose_name": "Hausabrechnung",
                "verbose_name_plural": "Hausabrechnungen",
                "ordering": ["name", "billing_year", "id"],
                "constraints": [
                    models.UniqueConstraint(fields=("name", "billing_year"), name="property_name_year_unique"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Unit",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "apartment_number",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Gleiche Nummer im selben Haus = dieselbe Wohnung (mehrere Mietphasen).",
                        max_length=50,
                        verbose_name="Wohnungsnummer",
                    ),
                ),
                ("label", models.CharField(max_length=255, verbose_name="Bezeichnung")),
                ("floor_area", models.PositiveIntegerField(default=0, verbose_name="Wohnfläche (qm)")),
                ("tenant_name", models.CharField(blank=True, max_length=255, null=True, verbose_name="Name")),
                ("street", models.CharField(blank=True, max_length=255, null=True, verbose_name="Straße")),
                ("zip_code", models.CharField(blank=True, max_length=20, null=True, verbose_name="Postleitzahl")),
                ("city", models.CharField(blank=True, max_length=100, null=True, verbose_name="Ort")),
                ("email", models.CharField(blank=True, max_length=255, null=True, verbose_name="E-Mail")),
                ("phone", models.CharField(blank=True, max_length=50, null=True, verbose_name="Telefon")),
                (
                    "property",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="units",
                        to="nebenkosten.property",
                        verbose_name="Hausabrechnung",
                    ),
                ),
            ],
            options={
                "verbose_name": "Wohnung",
                "verbose_name_plural": "Wohnungen",
                "ordering": ["id"],
                "indexes": [
                    models.Index(fields=["property", "apartment_number"], name="unit_property_number_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="TenancyPeriod",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("year", models.PositiveIntegerField(verbose_name="Jahr")),
                ("head_tenant_name", models.CharField(max_length=255, verbose_name="Hauptmieter")),
                ("start_date", models.DateField(verbose_name="Von")),
                ("end_date", models.DateField(verbose_name="Bis")),
                (
                    "persons",
                    models.DecimalField(
                        decimal_places=2,
                        default=decimal.Decimal("1.00"),
                        max_digits=5,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Anzahl Personen",
                    ),
                ),
                (
                    "persons_description",
                    models.CharField(
                        blank=True,
                        help_text="Bei Dezimalwerten, z. B. „1 Bewohner, 1 Kind Wechselmodell“.",
                        max_length=255,
                        null=True,
                        verbose_name="Personenbeschreibung",
                    ),
                ),
                (
                    "end_mode",
                    nebenkosten.models.TolerantChoiceField(
                        choices=END_MODE_CHOICES,
                        default="mietendeOffen",
                        enum=nebenkosten.models.TenancyPeriod.EndMode,
                        fallback="mietendeOffen",
                        max_length=40,
                        verbose_name="Mietende",
                    ),
                ),
                (
                    "unit",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="tenancy_periods",
                        to="nebenkosten.unit",
                        verbose_name="Wohnung",
                    ),
                ),
            ],
            options={
                "verbose_name": "Mietzeitraum",
                "verbose_name_plural": "Mietzeiträume",
                "ordering": ["start_date", "id"],
                "indexes": [
                    models.Index(fields=["unit", "end_date"], name="period_unit_end_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="HistoricalTenancyPeriod",
            fields=[
                ("id", models.BigIntegerField(auto_created=True, blank=True, db_index=True, verbose_name="ID")),
                ("year", models.PositiveIntegerField(verbose_name="Jahr")),
                ("head_tenant_name", models.CharField(max_length=255, verbose_name="Hauptmieter")),
                ("start_date", models.DateField(verbose_name="Von")),
                ("end_date", models.DateField(verbose_name="Bis")),
                (
                    "persons",
                    models.DecimalField(
                        decimal_places=2,
                        default=decimal.Decimal("1.00"),
                        max_digits=5,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Anzahl Personen",
                    ),
                ),
                (
                    "persons_description",
                    models.CharField(
                        blank=True,
                        help_text="Bei Dezimalwerten, z. B. „1 Bewohner, 1 Kind Wechselmodell“.",
                        max_length=255,
                        null=True,
                        verbose_name="Personenbeschreibung",
                    ),
                ),
                (
                    "end_mode",
                    nebenkosten.models.TolerantChoiceField(
                        choices=END_MODE_CHOICES,
                        default="mietendeOffen",
                        enum=nebenkosten.models.TenancyPeriod.EndMode,
                        fallback="mietendeOffen",
                        max_length=40,
                        verbose_name="Mietende",
                    ),
                ),
                ("history_id", models.AutoField(primary_key=True, serialize=False)),
                ("history_date", models.DateTimeField(db_index=True)),
                ("history_change_reason", models.CharField(max_length=100, null=True)),
                (
                    "history_type",
                    models.CharField(
                        choices=[("+", "Created"), ("~", "Changed"), ("-", "Deleted")],
                        max_length=1,
                    ),
                ),
                (
                    "history_user",
                    models.ForeignKey(
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "unit",
                    models.ForeignKey(
                        blank=True,
                        db_constraint=False,
                        null=True,
                        on_delete=django.db.models.deletion.DO_NOTHING,
                        related_name="+",
                        to="nebenkosten.unit",
                        verbose_name="Wohnung",
                    ),
                ),
            ],
            options={
                "verbose_name": "historical Mietzeitraum",
                "verbose_name_plural": "historical Mietzeiträume",
                "ordering": ("-history_date", "-history_id"),
                "get_latest_by": ("history_date", "history_id"),
            },
            bases=(simple_history.models.HistoricalChanges, models.Model),
        ),
        migrations.CreateModel(
            name="CoTenant",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255, verbose_name="Name")),
                ("start_date", models.DateField(verbose_name="Von")),
                ("end_date", models.DateField(verbose_name="Bis")),
                (
                    "tenancy_period",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="co_tenants",
                        to="nebenkosten.tenancyperiod",
                        verbose_name="Mietzeitraum",
                    ),
                ),
            ],
            options={
                "verbose_name": "Mitmieter",
                "verbose_name_plural": "Mitmieter",
                "ordering": ["start_date", "id"],
            },
        ),
        migrations.CreateModel(
            name="MeterReading",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "meter_type",
                    models.CharField(
                        db_index=True,
                        help_text="z. B. Frischwasser, Warmwasser, Strom, Gas.",
                        max_length=50,
                        verbose_name="Zählertyp",
                    ),
                ),
                ("meter_number", models.CharField(blank=True, max_length=50, null=True, verbose_name="Zählernummer")),
                ("start_value", models.DecimalField(decimal_places=3, max_digits=12, verbose_name="Zählerstand Start")),
                ("end_value", models.DecimalField(decimal_places=3, max_digits=12, verbose_name="Zählerstand Ende")),
                (
                    "delta",
                    models.DecimalField(
                        decimal_places=3,
                        default=decimal.Decimal("0"),
                        editable=False,
                        help_text="Wird bei jedem Speichern als Ende minus Start berechnet.",
                        max_digits=12,
                        verbose_name="Differenz",
                    ),
                ),
                ("counts_as_wastewater", models.BooleanField(blank=True, null=True, verbose_name="Auch Abwasser")),
                ("description", models.CharField(blank=True, max_length=255, null=True, verbose_name="Beschreibung")),
                (
                    "unit",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="meter_readings",
                        to="nebenkosten.unit",
                        verbose_name="Wohnung",
                    ),
                ),
            ],
            options={
                "verbose_name": "Zählerstand",
                "verbose_name_plural": "Zählerstände",
                "ordering": ["meter_type", "id"],
            },
        ),
        migrations.CreateModel(
            name="CostItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "category",
                    nebenkosten.models.TolerantChoiceField(
                        choices=CATEGORY_CHOICES,
                        enum=nebenkosten.models.CostItem.Category,
                        fallback="Sonstiges",
                        max_length=40,
                        verbose_name="Kostenart",
                    ),
                ),
                (
                    "amount",
                    models.DecimalField(
                        decimal_places=2,
                        default=decimal.Decimal("0.00"),
                        max_digits=10,
                        verbose_name="Betrag",
                    ),
                ),
                (
                    "label",
                    models.CharField(
                        blank=True,
                        help_text="Optional, besonders bei „Sonstiges“.",
                        max_length=255,
                        null=True,
                        verbose_name="Bezeichnung",
                    ),
                ),
                (
                    "allocation_method",
                    nebenkosten.models.TolerantChoiceField(
                        choices=ALLOCATION_CHOICES,
                        default="nach Qm",
                        enum=nebenkosten.models.CostItem.AllocationMethod,
                        fallback="nach Qm",
                        max_length=30,
                        verbose_name="Verteilungsart",
                    ),
                ),
                (
                    "property",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="cost_items",
                        to="nebenkosten.property",
                        verbose_name="Hausabrechnung",
                    ),
                ),
            ],
            options={
                "verbose_name": "Kostenposition",
                "verbose_name_plural": "Kostenpositionen",
                "ordering": ["id"],
            },
        ),
        migrations.CreateModel(
            name="IndividualProof",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("proof_date", models.DateField(blank=True, null=True, verbose_name="Von")),
                (
                    "amount",
                    models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True, verbose_name="Betrag"),
                ),
                (
                    "cost_item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="individual_proofs",
                        to="nebenkosten.costitem",
                        verbose_name="Kostenposition",
                    ),
                ),
                (
                    "unit",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="individual_proofs",
                        to="nebenkosten.unit",
                        verbose_name="Wohnung",
                    ),
                ),
            ],
            options={
                "verbose_name": "Einzelnachweis",
                "verbose_name_plural": "Einzelnachweise",
                "constraints": [
                    models.UniqueConstraint(fields=("cost_item", "unit"), name="individual_proof_item_unit_unique"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PropertyPhoto",
            fields=attachment_fields()
            + [
                (
                    "property_name",
                    models.CharField(db_index=True, max_length=255, verbose_name="Hausbezeichnung"),
                ),
            ],
            options={
                "verbose_name": "Hausfoto",
                "verbose_name_plural": "Hausfotos",
                "ordering": ["sort_order", "id"],
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="TenancyPeriodPhoto",
            fields=attachment_fields()
            + [
                (
                    "tenancy_period",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="photos",
                        to="nebenkosten.tenancyperiod",
                        verbose_name="Mietzeitraum",
                    ),
                ),
            ],
            options={
                "verbose_name": "Mietzeitraum-Foto",
                "verbose_name_plural": "Mietzeitraum-Fotos",
                "ordering": ["sort_order", "id"],
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="CostItemPhoto",
            fields=attachment_fields()
            + [
                (
                    "cost_item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="photos",
                        to="nebenkosten.costitem",
                        verbose_name="Kostenposition",
                    ),
                ),
            ],
            options={
                "verbose_name": "Kosten-Foto",
                "verbose_name_plural": "Kosten-Fotos",
                "ordering": ["sort_order", "id"],
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="MeterReadingPhoto",
            fields=attachment_fields()
            + [
                (
                    "meter_reading",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="photos",
                        to="nebenkosten.meterreading",
                        verbose_name="Zählerstand",
                    ),
                ),
            ],
            options={
                "verbose_name": "Zählerstand-Foto",
                "verbose_name_plural": "Zählerstand-Fotos",
                "ordering": ["sort_order", "id"],
                "abstract": False,
            },
        ),
    ]

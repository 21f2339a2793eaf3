from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation

from django.db import DEFAULT_DB_ALIAS

from nebenkosten.exceptions import NotFound, ValidationConflict
from nebenkosten.models import CostItem, IndividualProof, Property, Unit
from nebenkosten.services.attachments import AttachmentService
from nebenkosten.services.transactions import atomic_stage

COST_ITEM_FIELDS = ("category", "amount", "label", "allocation_method")


def _to_amount(value) -> Decimal:
    if value in (None, ""):
        return Decimal("0.00")
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationConflict(f"Ungültiger Betrag: {value}", code="invalid_amount") from exc


def _choice(enum, value, *, label: str):
    try:
        return enum(value)
    except ValueError as exc:
        raise ValidationConflict(f"Unbekannte {label}: {value}", code="invalid_choice") from exc


class CostItemService:
    def __init__(self, *, using: str = DEFAULT_DB_ALIAS, storage=None):
        self.using = using
        self.attachments = AttachmentService(storage=storage, using=using)

    def get(self, cost_item_id: int) -> CostItem:
        try:
            return CostItem.objects.using(self.using).get(pk=cost_item_id)
        except CostItem.DoesNotExist as exc:
            raise NotFound(f"Kostenposition {cost_item_id} existiert nicht.") from exc

    def cost_items_for_property(self, property_id: int) -> list[CostItem]:
        return list(CostItem.objects.using(self.using).filter(property_id=property_id).order_by("id"))

    def create_cost_item(
        self,
        property_id: int,
        *,
        category,
        amount=Decimal("0.00"),
        label: str | None = None,
        allocation_method=CostItem.AllocationMethod.BY_AREA,
    ) -> CostItem:
        with atomic_stage("Kostenposition anlegen", self.using):
            if not Property.objects.using(self.using).filter(pk=property_id).exists():
                raise NotFound(f"Hausabrechnung {property_id} existiert nicht.")
            item = CostItem(
                property_id=property_id,
                category=_choice(CostItem.Category, category, label="Kostenart"),
                amount=_to_amount(amount),
                label=label,
                allocation_method=_choice(
                    CostItem.AllocationMethod, allocation_method, label="Verteilungsart"
                ),
            )
            item.save(using=self.using)
            return item

    def update_cost_item(self, cost_item_id: int, **changes) -> CostItem:
        unknown = set(changes) - set(COST_ITEM_FIELDS)
        if unknown:
            raise TypeError(f"Unbekannte Felder: {', '.join(sorted(unknown))}")
        with atomic_stage("Kostenposition ändern", self.using):
            item = self.get(cost_item_id)
            if "category" in changes:
                item.category = _choice(CostItem.Category, changes["category"], label="Kostenart")
            if "allocation_method" in changes:
                item.allocation_method = _choice(
                    CostItem.AllocationMethod, changes["allocation_method"], label="Verteilungsart"
                )
            if "amount" in changes:
                item.amount = _to_amount(changes["amount"])
            if "label" in changes:
                item.label = changes["label"]
            item.save(using=self.using)
            return item

    def delete_cost_item(self, cost_item_id: int) -> None:
        with atomic_stage("Kostenposition löschen", self.using):
            item = self.get(cost_item_id)
            self.attachments.delete_owned_files_on_commit(item)
            item.delete(using=self.using)

    def upsert_individual_proof(
        self,
        cost_item_id: int,
        unit_id: int,
        *,
        proof_date: date | None = None,
        amount=None,
    ) -> IndividualProof:
        """Ein Einzelnachweis je Kostenposition und Wohnung; vorhandene Werte werden ersetzt."""
        with atomic_stage("Einzelnachweis speichern", self.using):
            item = self.get(cost_item_id)
            try:
                unit = Unit.objects.using(self.using).get(pk=unit_id)
            except Unit.DoesNotExist as exc:
                raise NotFound(f"Wohnung {unit_id} existiert nicht.") from exc
            proof, _ = IndividualProof.objects.using(self.using).update_or_create(
                cost_item=item,
                unit=unit,
                defaults={
                    "proof_date": proof_date,
                    "amount": None if amount is None else _to_amount(amount),
                },
            )
            return proof

    def individual_proofs(
        self,
        *,
        cost_item_id: int | None = None,
        unit_id: int | None = None,
    ) -> list[IndividualProof]:
        queryset = IndividualProof.objects.using(self.using).all()
        if cost_item_id is not None:
            queryset = queryset.filter(cost_item_id=cost_item_id)
        if unit_id is not None:
            queryset = queryset.filter(unit_id=unit_id)
        return list(queryset.order_by("cost_item_id", "unit_id"))

    def delete_individual_proof(self, cost_item_id: int, unit_id: int) -> int:
        with atomic_stage("Einzelnachweis löschen", self.using):
            deleted, _ = (
                IndividualProof.objects.using(self.using)
                .filter(cost_item_id=cost_item_id, unit_id=unit_id)
                .delete()
            )
            return deleted

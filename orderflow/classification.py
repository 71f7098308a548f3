"""Delivery classification: Small (motorcycle) or Bulk (van).

Value is checked first, then estimated weight, then garment count.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from .errors import ValidationError
from .models import ClassificationBasis, DeliveryClassification, Garment, Order

SMALL_MAX_GARMENTS = 5
SMALL_MAX_WEIGHT_KG = 10.0
SMALL_MAX_VALUE = 5000

# kg per garment type
GARMENT_WEIGHTS: Dict[str, float] = {
    "Shirt": 0.2, "Blouse": 0.15, "T-Shirt": 0.15, "Tie": 0.05, "Scarf": 0.1, "Handkerchief": 0.02,
    "Pants": 0.4, "Trousers": 0.4, "Skirt": 0.3, "Dress": 0.4, "Shorts": 0.25,
    "Jacket": 0.8, "Coat": 1.2, "Suit": 1.0, "Blazer": 0.7, "Sweater": 0.5,
    "Bedding": 2.0, "Curtains": 1.5, "Blanket": 2.5, "Duvet": 3.0, "Pillow": 0.5,
    "Other": 0.3,
}


@dataclass(frozen=True)
class ClassificationResult:
    classification: DeliveryClassification
    reason_basis: str  # value | weight | garment_count
    garment_count: int
    estimated_weight: float
    order_value: int
    reason: str


def estimate_garment_weight(garments: Iterable[Garment]) -> float:
    total = sum(GARMENT_WEIGHTS.get(g.type or "Other", GARMENT_WEIGHTS["Other"]) for g in garments)
    return round(total, 2)


def classify_delivery(order: Order) -> ClassificationResult:
    count = len(order.garments)
    value = order.total_amount
    weight = estimate_garment_weight(order.garments)

    def result(cls, basis, reason):
        return ClassificationResult(cls, basis, count, weight, value, reason)

    if value > SMALL_MAX_VALUE:
        return result(DeliveryClassification.BULK, "value",
                      f"order value {value} exceeds {SMALL_MAX_VALUE}")
    if weight > SMALL_MAX_WEIGHT_KG:
        return result(DeliveryClassification.BULK, "weight",
                      f"estimated weight {weight}kg exceeds {SMALL_MAX_WEIGHT_KG}kg")
    if count > SMALL_MAX_GARMENTS:
        return result(DeliveryClassification.BULK, "garment_count",
                      f"{count} garments exceeds {SMALL_MAX_GARMENTS}")
    return result(DeliveryClassification.SMALL, "garment_count",
                  f"{count} garments, {weight}kg, value {value}")


def vehicle_for(classification: DeliveryClassification) -> str:
    return "Motorcycle" if classification == DeliveryClassification.SMALL else "Van"


def apply_auto_classification(order: Order) -> Order:
    """Classify automatically unless a manual override is in place."""
    if order.classification_basis == ClassificationBasis.MANUAL:
        return order
    updated = order.snapshot()
    updated.delivery_classification = classify_delivery(order).classification
    updated.classification_basis = ClassificationBasis.AUTO
    return updated


def override_classification(order: Order, new: DeliveryClassification, reason: str,
                            current: Optional[DeliveryClassification] = None) -> Order:
    current = current or order.delivery_classification or classify_delivery(order).classification
    if DeliveryClassification(new) == current:
        raise ValidationError("new classification must differ from the current one")
    if not reason or len(reason.strip()) < 10:
        raise ValidationError("override reason must be at least 10 characters")
    updated = order.snapshot()
    updated.delivery_classification = DeliveryClassification(new)
    updated.classification_basis = ClassificationBasis.MANUAL
    return updated

# earnings.py
from abc import ABC, abstractmethod

from fulfillment_service.config import DELIVERY_BASE_FEE, DELIVERY_PER_KM
from fulfillment_service.geo import distance_km
from fulfillment_service.schemas import Delivery


class EarningsPolicy(ABC):
    """How much a driver earns for a completed delivery, tips excluded."""

    @abstractmethod
    def compute(self, delivery: Delivery) -> float:
        ...


class DistanceEarningsPolicy(EarningsPolicy):
    """Base fee plus a per-kilometre rate over the pickup→dropoff distance."""

    def __init__(self, base_fee: float = DELIVERY_BASE_FEE, per_km: float = DELIVERY_PER_KM):
        self.base_fee = base_fee
        self.per_km = per_km

    def compute(self, delivery: Delivery) -> float:
        km = distance_km(delivery.pickup_address, delivery.dropoff_address)
        return round(self.base_fee + self.per_km * km, 2)


class FlatEarningsPolicy(EarningsPolicy):
    def __init__(self, amount: float = DELIVERY_BASE_FEE):
        self.amount = amount

    def compute(self, delivery: Delivery) -> float:
        return round(self.amount, 2)

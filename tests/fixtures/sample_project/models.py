"""Inventory data models."""

from dataclasses import dataclass, field
from typing import List


@dataclass
class Item:
    """A stocked item."""

    sku: str
    price: float
    quantity: int = 0

    def value(self) -> float:
        """Stock value of this item."""
        return self.price * self.quantity


@dataclass
class Warehouse:
    name: str
    items: List[Item] = field(default_factory=list)

    def add(self, item: Item) -> None:
        self.items.append(item)

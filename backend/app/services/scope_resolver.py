"""Scope resolution for counting sessions.

Turns a declarative scope (type + filters) into the concrete, ordered list
of (product, variant, location, warehouse) cells to count, with the
theoretical quantity snapshotted from ``stock_on_hand``.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.models.counting import CountingScopeType
from app.models.location import Location
from app.models.product import Product
from app.models.stock import StockOnHand
from app.services.counting_errors import InvalidScopeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedScopeItem:
    """One cell of a resolved scope."""
    product_id: int
    variant_id: Optional[int]
    location_id: int
    warehouse_id: int
    theoretical_qty: Decimal

    @property
    def sort_key(self) -> Tuple[int, int, int, int]:
        return (
            self.warehouse_id,
            self.location_id,
            self.product_id,
            self.variant_id or 0,
        )


def _id_list(filters: Dict[str, Any], key: str) -> List[int]:
    value = filters.get(key)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise InvalidScopeError(f"Scope filter '{key}' must be a list of ids")
    try:
        return sorted({int(v) for v in value})
    except (TypeError, ValueError):
        raise InvalidScopeError(f"Scope filter '{key}' must contain integer ids")


def normalize_scope(
    scope_type: CountingScopeType,
    filters: Optional[Dict[str, Any]],
    allow_unexpected_items: bool = False,
) -> Tuple[Dict[str, Any], bool]:
    """Validate scope filters and return ``(normalized_filters, allow_unexpected_items)``.

    Raises:
        InvalidScopeError: If the filters do not fit the scope type.
    """
    filters = dict(filters or {})

    if scope_type == CountingScopeType.FULL_INVENTORY:
        if any(filters.get(k) for k in ("product_ids", "location_id", "location_ids", "category_ids")):
            raise InvalidScopeError("full_inventory scope takes no filters")
        return {}, True

    if allow_unexpected_items:
        raise InvalidScopeError("allow_unexpected_items is only valid for full_inventory scope")

    if scope_type == CountingScopeType.PRODUCT_LOCATION:
        product_ids = _id_list(filters, "product_ids")
        location_id = filters.get("location_id")
        if not product_ids:
            raise InvalidScopeError("product_location scope requires product_ids")
        if location_id is None or isinstance(location_id, (list, tuple)):
            raise InvalidScopeError("product_location scope requires a single location_id")
        try:
            location_id = int(location_id)
        except (TypeError, ValueError):
            raise InvalidScopeError("location_id must be an integer id")
        return {"product_ids": product_ids, "location_id": location_id}, False

    if scope_type == CountingScopeType.PRODUCT:
        product_ids = _id_list(filters, "product_ids")
        if not product_ids:
            raise InvalidScopeError("product scope requires product_ids")
        return {"product_ids": product_ids}, False

    if scope_type == CountingScopeType.LOCATION:
        location_ids = _id_list(filters, "location_ids")
        if not location_ids:
            raise InvalidScopeError("location scope requires location_ids")
        return {"location_ids": location_ids}, False

    if scope_type == CountingScopeType.CATEGORY:
        category_ids = _id_list(filters, "category_ids")
        if not category_ids:
            raise InvalidScopeError("category scope requires category_ids")
        return {"category_ids": category_ids}, False

    raise InvalidScopeError(f"Unknown scope type '{scope_type}'")


class ScopeResolver:
    """Resolves a session scope against the catalog and the stock ledger."""

    def __init__(self, db: Session):
        self.db = db

    def resolve(
        self,
        scope_type: CountingScopeType,
        filters: Optional[Dict[str, Any]],
        allow_unexpected_items: bool = False,
    ) -> List[ResolvedScopeItem]:
        """Return the de-duplicated, deterministically ordered items in scope.

        Raises:
            InvalidScopeError: If the scope is malformed or resolves to nothing.
        """
        filters, _ = normalize_scope(scope_type, filters, allow_unexpected_items)

        query = (
            self.db.query(StockOnHand, Location.warehouse_id)
            .join(Product, Product.id == StockOnHand.product_id)
            .join(Location, Location.id == StockOnHand.location_id)
            .filter(StockOnHand.qty > 0, Product.active.is_(True))
        )

        if scope_type == CountingScopeType.PRODUCT_LOCATION:
            query = query.filter(
                StockOnHand.product_id.in_(filters["product_ids"]),
                StockOnHand.location_id == filters["location_id"],
            )
        elif scope_type == CountingScopeType.PRODUCT:
            query = query.filter(StockOnHand.product_id.in_(filters["product_ids"]))
        elif scope_type == CountingScopeType.LOCATION:
            query = query.filter(StockOnHand.location_id.in_(filters["location_ids"]))
        elif scope_type == CountingScopeType.CATEGORY:
            query = query.filter(Product.category_id.in_(filters["category_ids"]))

        resolved: Dict[Tuple[int, Optional[int], int], ResolvedScopeItem] = {}
        for stock, warehouse_id in query.all():
            key = (stock.product_id, stock.variant_id, stock.location_id)
            existing = resolved.get(key)
            qty = Decimal(str(stock.qty))
            if existing is not None:
                qty += existing.theoretical_qty
            resolved[key] = ResolvedScopeItem(
                product_id=stock.product_id,
                variant_id=stock.variant_id,
                location_id=stock.location_id,
                warehouse_id=warehouse_id,
                theoretical_qty=qty,
            )

        if scope_type == CountingScopeType.PRODUCT_LOCATION:
            self._add_unstocked_products(resolved, filters)

        if not resolved:
            raise InvalidScopeError("Scope resolves to no countable items")

        items = sorted(resolved.values(), key=lambda i: i.sort_key)
        logger.info(
            f"Resolved {scope_type.value} scope to {len(items)} item(s)"
        )
        return items

    def _add_unstocked_products(
        self,
        resolved: Dict[Tuple[int, Optional[int], int], ResolvedScopeItem],
        filters: Dict[str, Any],
    ) -> None:
        """Requested products with no ledger row at the location count from zero."""
        location = self.db.query(Location).filter(Location.id == filters["location_id"]).first()
        if location is None:
            raise InvalidScopeError(f"Location {filters['location_id']} not found")

        products = (
            self.db.query(Product)
            .filter(Product.id.in_(filters["product_ids"]), Product.active.is_(True))
            .all()
        )
        stocked = {product_id for product_id, _, _ in resolved}
        for product in products:
            if product.id in stocked:
                continue
            resolved[(product.id, None, location.id)] = ResolvedScopeItem(
                product_id=product.id,
                variant_id=None,
                location_id=location.id,
                warehouse_id=location.warehouse_id,
                theoretical_qty=Decimal("0"),
            )

"""SQLAlchemy models."""

from app.models.user import User
from app.models.product import Product, ProductCategory, ProductVariant
from app.models.location import Location, Warehouse
from app.models.stock import StockOnHand
from app.models.counting import (
    AssignmentStatus,
    CountableItem,
    CountEntry,
    CountingAssignment,
    CountingEvent,
    CountingScopeType,
    CountingSession,
    CountingStatus,
    ExecutionMode,
    ItemResolution,
    ResolutionMethod,
)

__all__ = [
    "User",
    "Product",
    "ProductCategory",
    "ProductVariant",
    "Location",
    "Warehouse",
    "StockOnHand",
    "CountingSession",
    "CountableItem",
    "CountEntry",
    "CountingAssignment",
    "ItemResolution",
    "CountingEvent",
    "CountingStatus",
    "CountingScopeType",
    "ExecutionMode",
    "ResolutionMethod",
    "AssignmentStatus",
]

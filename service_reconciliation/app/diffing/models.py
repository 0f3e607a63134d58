"""
Entitlement data models for the reconciliation engine.
"""

from typing import Dict, Any, Optional, List, Tuple, Mapping, FrozenSet
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class Attribute(str, Enum):
    """Entitlement attribute names as they appear in request payloads."""
    PRODUCT_CODE = "productCode"
    START_DATE = "startDate"
    END_DATE = "endDate"
    QUANTITY = "quantity"
    PACKAGE_NAME = "packageName"
    PRODUCT_MODIFIER = "productModifier"


class Category(str, Enum):
    """Entitlement categories."""
    MODEL = "Model"
    DATA = "Data"
    APP = "App"

    @property
    def schema(self) -> Tuple[str, ...]:
        """Attribute names compared for this category."""
        return CATEGORY_SCHEMAS[self]


CATEGORY_SCHEMAS: Dict[Category, Tuple[str, ...]] = {
    Category.MODEL: tuple(a.value for a in (
        Attribute.PRODUCT_CODE, Attribute.START_DATE, Attribute.END_DATE,
        Attribute.PRODUCT_MODIFIER,
    )),
    Category.DATA: tuple(a.value for a in (
        Attribute.PRODUCT_CODE, Attribute.START_DATE, Attribute.END_DATE,
        Attribute.PRODUCT_MODIFIER,
    )),
    Category.APP: tuple(a.value for a in (
        Attribute.PRODUCT_CODE, Attribute.PACKAGE_NAME, Attribute.QUANTITY,
        Attribute.START_DATE, Attribute.END_DATE, Attribute.PRODUCT_MODIFIER,
    )),
}

DATE_ATTRIBUTES = frozenset({Attribute.START_DATE.value, Attribute.END_DATE.value})


class DiffStatus(str, Enum):
    """Pairwise diff classification."""
    ADDED = "Added"
    REMOVED = "Removed"
    UPDATED = "Updated"
    UNCHANGED = "Unchanged"


@dataclass(frozen=True)
class EntitlementRecord:
    """One product grant captured by a provisioning request.

    ``attributes`` holds normalized values: dates are ``datetime.date`` when
    parseable and the raw value otherwise, quantities are numbers when
    parseable. ``request_id`` is the request that captured the record;
    ``source_request_id`` differs from it only for carried-over instances of
    a multi-instance product.
    """
    category: Category
    product_code: str
    product_name: str
    attributes: Mapping[str, Any] = field(default_factory=dict, hash=False)
    source_request_id: str = ""
    multi_instance: bool = False
    request_id: str = ""

    @property
    def owner_request_id(self) -> str:
        return self.request_id or self.source_request_id

    @property
    def identity_key(self) -> Tuple[str, ...]:
        """Key under which two records denote the same product."""
        if self.multi_instance and self.category == Category.APP:
            return (self.category.value, self.product_code, self.source_request_id)
        return (self.category.value, self.product_code)

    def _date(self, name: str) -> Optional[date]:
        value = self.attributes.get(name)
        return value if isinstance(value, date) else None

    @property
    def start_date(self) -> Optional[date]:
        return self._date(Attribute.START_DATE.value)

    @property
    def end_date(self) -> Optional[date]:
        """End date, or None when absent or unparsable."""
        return self._date(Attribute.END_DATE.value)

    @property
    def package_name(self) -> Optional[str]:
        return self.attributes.get(Attribute.PACKAGE_NAME.value)

    @property
    def quantity(self) -> Any:
        return self.attributes.get(Attribute.QUANTITY.value)


@dataclass(frozen=True)
class Snapshot:
    """Full entitlement state captured by one provisioning request."""
    request_id: str
    request_number: Optional[int]
    created_at: Optional[datetime]
    entitlements: Tuple[EntitlementRecord, ...] = ()
    account: Optional[str] = None
    deployment: Optional[str] = None
    tenant_name: Optional[str] = None
    region: Optional[str] = None
    action: Optional[str] = None

    @property
    def is_orderable(self) -> bool:
        """Whether the snapshot can take part in chronological logic."""
        return self.request_number is not None and self.created_at is not None

    @property
    def chronological_key(self) -> Tuple[datetime, int]:
        return (self.created_at, self.request_number)

    def entitlements_for(self, category: Category) -> List[EntitlementRecord]:
        """Get entitlements of one category in payload order."""
        return [e for e in self.entitlements if e.category == category]

    def product_codes(self) -> FrozenSet[str]:
        return frozenset(e.product_code for e in self.entitlements)

    def has_overlapping_app_dates(self) -> bool:
        """Check for two app items of one product with overlapping date ranges."""
        ranges: Dict[str, List[Tuple[date, date]]] = {}
        for record in self.entitlements_for(Category.APP):
            if record.start_date and record.end_date:
                ranges.setdefault(record.product_code, []).append(
                    (record.start_date, record.end_date)
                )

        for entries in ranges.values():
            for i, (start_a, end_a) in enumerate(entries):
                for start_b, end_b in entries[i + 1:]:
                    if start_a <= end_b and end_a >= start_b:
                        return True
        return False


@dataclass(frozen=True)
class DiffEntry:
    """Classification of one product between two snapshots."""
    product_code: str
    category: Category
    status: DiffStatus
    previous_attributes: Optional[Mapping[str, Any]] = field(default=None, hash=False)
    current_attributes: Optional[Mapping[str, Any]] = field(default=None, hash=False)
    changed_attribute_names: FrozenSet[str] = frozenset()
    product_name: Optional[str] = None
    identity_key: Tuple[Any, ...] = ()

    def __post_init__(self):
        if bool(self.changed_attribute_names) != (self.status == DiffStatus.UPDATED):
            raise ValueError(
                f"changed_attribute_names must be non-empty only for Updated entries "
                f"({self.product_code}: {self.status.value})"
            )

    def value_change(self, attribute: str) -> Tuple[Any, Any]:
        """Get (old, new) values of an attribute."""
        previous = (self.previous_attributes or {}).get(attribute)
        current = (self.current_attributes or {}).get(attribute)
        return previous, current


@dataclass
class ResolvedComparison:
    """Diff of two snapshots with the comparison direction settled."""
    previous: Snapshot
    current: Snapshot
    diffs: Dict[Category, List[DiffEntry]] = field(default_factory=dict)

    def entries(self) -> List[DiffEntry]:
        """All entries, grouped by category in Model, Data, App order."""
        return [entry for category in Category for entry in self.diffs.get(category, [])]

    def with_status(self, status: DiffStatus) -> List[DiffEntry]:
        return [entry for entry in self.entries() if entry.status == status]

    @property
    def has_changes(self) -> bool:
        return any(entry.status != DiffStatus.UNCHANGED for entry in self.entries())

    def summary(self) -> Dict[str, int]:
        """Count entries per status."""
        counts = {status.value: 0 for status in DiffStatus}
        for entry in self.entries():
            counts[entry.status.value] += 1
        return counts

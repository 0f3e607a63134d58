"""
Pairwise entitlement differ.

Classifies every product of one category as Added, Removed, Updated or
Unchanged between a previous and a current entitlement list, comparing the
fixed attribute schema of the category.
"""

import math
from typing import Dict, Any, List, Iterable, Tuple, Optional

from shared.logging import get_logger
from .models import (
    Category, DiffEntry, DiffStatus, EntitlementRecord, DATE_ATTRIBUTES
)

IdentityKey = Tuple[Any, ...]


def _values_equal(attribute: str, previous: Any, current: Any) -> bool:
    """Compare normalized attribute values.

    Dates were already truncated to calendar days by the extractor. Numbers
    compare exactly, strings case-sensitively.
    """
    if attribute in DATE_ATTRIBUTES:
        return previous == current and type(previous) is type(current)
    if isinstance(previous, bool) or isinstance(current, bool):
        return previous is current
    if isinstance(previous, float) and isinstance(current, float):
        if math.isnan(previous) and math.isnan(current):
            return True
    return previous == current


class PairwiseDiffer:
    """Computes attribute-level differences between two entitlement lists."""

    def __init__(self):
        self.logger = get_logger("reconciliation.differ")

    def diff(
        self,
        previous: Iterable[EntitlementRecord],
        current: Iterable[EntitlementRecord],
    ) -> Dict[Category, List[DiffEntry]]:
        """Diff every category, keeping the category boundary in the output."""
        previous = list(previous)
        current = list(current)
        return {
            category: self.diff_category(
                category,
                [r for r in previous if r.category == category],
                [r for r in current if r.category == category],
            )
            for category in Category
        }

    def diff_category(
        self,
        category: Category,
        previous: Iterable[EntitlementRecord],
        current: Iterable[EntitlementRecord],
    ) -> List[DiffEntry]:
        """Diff two entitlement lists of one category, sorted by product code."""
        previous_by_key = self._index(category, previous)
        current_by_key = self._index(category, current)

        entries: List[DiffEntry] = []
        for key in set(previous_by_key) | set(current_by_key):
            before = previous_by_key.get(key)
            after = current_by_key.get(key)
            entries.append(self._classify(category, key, before, after))

        entries.sort(key=lambda e: (e.product_code, tuple(str(part) for part in e.identity_key)))

        self.logger.debug(
            "Category diffed",
            category=category.value,
            previous=len(previous_by_key),
            current=len(current_by_key),
            changed=sum(1 for e in entries if e.status != DiffStatus.UNCHANGED)
        )
        return entries

    def _index(
        self, category: Category, records: Iterable[EntitlementRecord]
    ) -> Dict[IdentityKey, EntitlementRecord]:
        """Build an identity-keyed lookup.

        Repeated keys within one list get an occurrence suffix so several
        line items of one product are matched positionally.
        """
        index: Dict[IdentityKey, EntitlementRecord] = {}
        occurrences: Dict[IdentityKey, int] = {}

        for record in records:
            if record.category != category:
                continue
            base = record.identity_key
            seen = occurrences.get(base, 0)
            occurrences[base] = seen + 1
            key = base if seen == 0 else base + (f"#{seen + 1}",)
            index[key] = record

        return index

    def _classify(
        self,
        category: Category,
        key: IdentityKey,
        before: Optional[EntitlementRecord],
        after: Optional[EntitlementRecord],
    ) -> DiffEntry:
        if before is None:
            return DiffEntry(
                product_code=after.product_code,
                category=category,
                status=DiffStatus.ADDED,
                current_attributes=dict(after.attributes),
                product_name=after.product_name,
                identity_key=key,
            )

        if after is None:
            return DiffEntry(
                product_code=before.product_code,
                category=category,
                status=DiffStatus.REMOVED,
                previous_attributes=dict(before.attributes),
                product_name=before.product_name,
                identity_key=key,
            )

        changed = frozenset(
            name for name in category.schema
            if not _values_equal(name, before.attributes.get(name), after.attributes.get(name))
        )
        return DiffEntry(
            product_code=after.product_code,
            category=category,
            status=DiffStatus.UPDATED if changed else DiffStatus.UNCHANGED,
            previous_attributes=dict(before.attributes),
            current_attributes=dict(after.attributes),
            changed_attribute_names=changed,
            product_name=after.product_name,
            identity_key=key,
        )

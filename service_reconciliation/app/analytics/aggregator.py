"""
Package change aggregation over diff results.

Folds Updated diff entries, tagged with account and deployment, into
by-product and by-account roll-ups plus a recency-ordered change feed.
"""

import re
from typing import Dict, Any, Optional, List, Iterable, Callable, Set, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, Field

from shared.logging import get_logger
from ..diffing.models import Attribute, DiffEntry, DiffStatus, ResolvedComparison


class ChangeDirection(str, Enum):
    """Caller-defined direction of an Updated entry."""
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


ChangeClassifier = Callable[[DiffEntry], Optional[ChangeDirection]]

_UPGRADE_KEYWORDS = ("premium", "professional", "enterprise", "advanced", "plus")
_DOWNGRADE_KEYWORDS = ("basic", "starter", "lite", "standard")
_TIER_NUMBER = re.compile(r"\d+")


def package_tier_classifier(entry: DiffEntry) -> Optional[ChangeDirection]:
    """Classify a package name change by tier.

    Compares the first number in each package name, then falls back to
    tier keywords. Returns None when neither decides.
    """
    package = Attribute.PACKAGE_NAME.value
    if entry.status != DiffStatus.UPDATED or package not in entry.changed_attribute_names:
        return None

    previous, current = entry.value_change(package)
    if not isinstance(previous, str) or not isinstance(current, str):
        return None

    previous_number = _TIER_NUMBER.search(previous)
    current_number = _TIER_NUMBER.search(current)
    if previous_number and current_number:
        before, after = int(previous_number.group()), int(current_number.group())
        if after > before:
            return ChangeDirection.UPGRADE
        if after < before:
            return ChangeDirection.DOWNGRADE

    previous_lower, current_lower = previous.lower(), current.lower()
    for keyword in _UPGRADE_KEYWORDS:
        if keyword in current_lower and keyword not in previous_lower:
            return ChangeDirection.UPGRADE
    for keyword in _DOWNGRADE_KEYWORDS:
        if keyword in current_lower and keyword not in previous_lower:
            return ChangeDirection.DOWNGRADE

    return None


@dataclass(frozen=True)
class ChangeRecord:
    """A diff entry tagged with where and when it happened."""
    entry: DiffEntry
    request_id: str
    account: str
    deployment: str
    created_at: datetime
    previous_request_id: Optional[str] = None
    tenant_name: Optional[str] = None
    request_number: Optional[int] = None


@dataclass(frozen=True)
class AggregationWindow:
    """Closed time window over request creation times.

    Naive bounds and timestamps are taken as UTC.
    """
    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", _as_utc(self.start))
        object.__setattr__(self, "end", _as_utc(self.end))

    @classmethod
    def lookback(cls, years: int, as_of: Optional[datetime] = None) -> "AggregationWindow":
        end = _as_utc(as_of) if as_of else datetime.now(timezone.utc)
        return cls(start=end - timedelta(days=365 * years), end=end)

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= _as_utc(timestamp) <= self.end


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AggregateNode(BaseModel):
    """Hierarchical change counter.

    ``unclassified`` holds updates the classifier could not place, so
    ``total_changes == upgrades + downgrades + unclassified`` always holds.
    """
    scope_key: str
    total_changes: int = 0
    upgrades: int = 0
    downgrades: int = 0
    unclassified: int = 0
    accounts: int = 0
    requests: int = 0
    children: List["AggregateNode"] = Field(default_factory=list)

    @property
    def fully_classified(self) -> bool:
        return self.total_changes == self.upgrades + self.downgrades


class RecentChange(BaseModel):
    """One Updated entry with timeline context."""
    account: str
    deployment: str
    tenant_name: Optional[str] = None
    request_id: str
    previous_request_id: Optional[str] = None
    created_at: datetime
    category: str
    product_code: str
    product_name: Optional[str] = None
    changed_attributes: List[str] = Field(default_factory=list)
    previous_values: Dict[str, Any] = Field(default_factory=dict)
    new_values: Dict[str, Any] = Field(default_factory=dict)
    direction: Optional[ChangeDirection] = None


class AggregationResult(BaseModel):
    """The three roll-up views and run statistics."""
    by_product: List[AggregateNode] = Field(default_factory=list)
    by_account: List[AggregateNode] = Field(default_factory=list)
    recent: List[RecentChange] = Field(default_factory=list)
    records_analyzed: int = 0
    changes_found: int = 0
    upgrades_found: int = 0
    downgrades_found: int = 0
    requests_with_changes: int = 0
    accounts_affected: int = 0
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None


@dataclass
class _Bucket:
    total: int = 0
    upgrades: int = 0
    downgrades: int = 0
    accounts: Set[str] = field(default_factory=set)
    requests: Set[str] = field(default_factory=set)
    children: Dict[str, "_Bucket"] = field(default_factory=dict)

    def add(self, record: ChangeRecord, direction: Optional[ChangeDirection]):
        self.total += 1
        if direction == ChangeDirection.UPGRADE:
            self.upgrades += 1
        elif direction == ChangeDirection.DOWNGRADE:
            self.downgrades += 1
        self.accounts.add(record.account)
        self.requests.add(record.request_id)

    def child(self, key: str) -> "_Bucket":
        return self.children.setdefault(key, _Bucket())

    def to_node(self, scope_key: str) -> AggregateNode:
        return AggregateNode(
            scope_key=scope_key,
            total_changes=self.total,
            upgrades=self.upgrades,
            downgrades=self.downgrades,
            unclassified=self.total - self.upgrades - self.downgrades,
            accounts=len(self.accounts),
            requests=len(self.requests),
            children=[self.children[key].to_node(key) for key in sorted(self.children)],
        )


def _ranked(buckets: Dict[str, _Bucket], limit: Optional[int] = None) -> List[AggregateNode]:
    nodes = [bucket.to_node(key) for key, bucket in buckets.items()]
    nodes.sort(key=lambda n: (-n.total_changes, n.scope_key))
    return nodes[:limit] if limit is not None else nodes


class ChangeAggregator:
    """Rolls diff entries up by product, by account and by recency."""

    def __init__(self, classifier: ChangeClassifier = package_tier_classifier):
        self.classifier = classifier
        self.logger = get_logger("reconciliation.aggregator")

    def build_change_records(
        self,
        comparisons: Iterable[ResolvedComparison],
        collapse_repeated_transitions: bool = False,
    ) -> List[ChangeRecord]:
        """Tag the entries of chronological comparisons for aggregation.

        Comparisons must be in chronological order for one deployment. With
        ``collapse_repeated_transitions`` a package change to the same target
        and direction as the last one recorded for that product is dropped.
        """
        package = Attribute.PACKAGE_NAME.value
        recent_transitions: Dict[Tuple[str, Tuple[Any, ...]], Tuple[Any, Optional[ChangeDirection]]] = {}
        records: List[ChangeRecord] = []

        for comparison in comparisons:
            current = comparison.current
            deployment = current.deployment or current.tenant_name or "Unknown"

            for entry in comparison.entries():
                if (
                    collapse_repeated_transitions
                    and entry.status == DiffStatus.UPDATED
                    and package in entry.changed_attribute_names
                ):
                    transition = (entry.value_change(package)[1], self.classifier(entry))
                    key = (deployment, entry.identity_key)
                    if recent_transitions.get(key) == transition:
                        self.logger.debug(
                            "Skipping repeated transition",
                            request_id=current.request_id,
                            product_code=entry.product_code,
                            package=transition[0]
                        )
                        continue
                    recent_transitions[key] = transition

                records.append(ChangeRecord(
                    entry=entry,
                    request_id=current.request_id,
                    account=current.account or "Unknown",
                    deployment=deployment,
                    created_at=current.created_at,
                    previous_request_id=comparison.previous.request_id,
                    tenant_name=current.tenant_name,
                    request_number=current.request_number,
                ))

        return records

    def aggregate(
        self,
        records: Iterable[ChangeRecord],
        window: Optional[AggregationWindow] = None,
        recent_limit: Optional[int] = 20,
        account_limit: Optional[int] = None,
    ) -> AggregationResult:
        """Build by-product, by-account and recent-change views.

        Only Updated entries count as changes. Entries the classifier cannot
        place count toward totals but toward neither direction.
        """
        by_product: Dict[str, _Bucket] = {}
        by_account: Dict[str, _Bucket] = {}
        recent: List[Tuple[ChangeRecord, Optional[ChangeDirection]]] = []
        overall = _Bucket()
        analyzed = 0

        for record in records:
            if window is not None and not window.contains(record.created_at):
                continue
            analyzed += 1
            if record.entry.status != DiffStatus.UPDATED:
                continue

            direction = self.classifier(record.entry)
            overall.add(record, direction)

            by_product.setdefault(record.entry.product_code, _Bucket()).add(record, direction)

            account = by_account.setdefault(record.account, _Bucket())
            deployment = account.child(record.deployment)
            product = deployment.child(record.entry.product_code)
            for bucket in (account, deployment, product):
                bucket.add(record, direction)

            recent.append((record, direction))

        recent.sort(
            key=lambda pair: (pair[0].created_at, pair[0].request_number or 0),
            reverse=True
        )
        if recent_limit is not None:
            recent = recent[:recent_limit]

        result = AggregationResult(
            by_product=_ranked(by_product),
            by_account=_ranked(by_account, account_limit),
            recent=[self._recent_change(record, direction) for record, direction in recent],
            records_analyzed=analyzed,
            changes_found=overall.total,
            upgrades_found=overall.upgrades,
            downgrades_found=overall.downgrades,
            requests_with_changes=len(overall.requests),
            accounts_affected=len(overall.accounts),
            window_start=window.start if window else None,
            window_end=window.end if window else None,
        )

        self.logger.info(
            "Package change aggregation complete",
            records=analyzed,
            changes=result.changes_found,
            upgrades=result.upgrades_found,
            downgrades=result.downgrades_found,
            accounts=result.accounts_affected
        )
        return result

    def _recent_change(self, record: ChangeRecord, direction: Optional[ChangeDirection]) -> RecentChange:
        entry = record.entry
        changed = sorted(entry.changed_attribute_names)
        return RecentChange(
            account=record.account,
            deployment=record.deployment,
            tenant_name=record.tenant_name,
            request_id=record.request_id,
            previous_request_id=record.previous_request_id,
            created_at=record.created_at,
            category=entry.category.value,
            product_code=entry.product_code,
            product_name=entry.product_name,
            changed_attributes=changed,
            previous_values={name: entry.value_change(name)[0] for name in changed},
            new_values={name: entry.value_change(name)[1] for name in changed},
            direction=direction,
        )

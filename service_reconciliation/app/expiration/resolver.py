"""
Extension detection for expiring entitlements.
"""

from typing import Dict, Any, Optional, List, Iterable, Tuple
from dataclasses import dataclass, field
from datetime import date, timedelta
from collections import defaultdict
from enum import Enum

from shared.logging import bind_account, get_logger, reset_account
from shared.errors import ValidationError
from ..diffing.models import EntitlementRecord, Snapshot


class ExtensionStatus(str, Enum):
    """Outcome of extension detection."""
    EXTENDED = "Extended"
    AT_RISK = "AtRisk"


@dataclass(frozen=True)
class ExtensionResult:
    """Extension outcome for one expiring entitlement."""
    status: ExtensionStatus
    item: EntitlementRecord
    by_request_id: Optional[str] = None
    new_end_date: Optional[date] = None

    @property
    def is_extended(self) -> bool:
        return self.status == ExtensionStatus.EXTENDED


@dataclass
class GroupExtensionResult:
    """Extension outcome for a group of entitlements, e.g. one request."""
    group_key: str
    status: ExtensionStatus = ExtensionStatus.EXTENDED
    results: List[ExtensionResult] = field(default_factory=list)

    @property
    def at_risk(self) -> List[ExtensionResult]:
        return [r for r in self.results if not r.is_extended]


@dataclass
class ExpiringItem:
    """Entitlement expiring inside the monitored window."""
    account: Optional[str]
    request_id: str
    request_number: int
    end_date: date
    days_until_expiry: int
    extension: ExtensionResult

    @property
    def product_code(self) -> str:
        return self.extension.item.product_code


@dataclass
class ExpirationReport:
    """Result of scanning snapshots for upcoming expirations."""
    as_of: date
    window_days: int
    snapshots_analyzed: int = 0
    entitlements_processed: int = 0
    extensions_found: int = 0
    removed_in_later_request: int = 0
    items: List[ExpiringItem] = field(default_factory=list)

    @property
    def at_risk(self) -> List[ExpiringItem]:
        return [i for i in self.items if not i.extension.is_extended]

    def by_request(self) -> Dict[str, GroupExtensionResult]:
        """Group items per request; a request is at risk if any item is."""
        groups: Dict[str, GroupExtensionResult] = {}
        for item in self.items:
            group = groups.setdefault(item.request_id, GroupExtensionResult(group_key=item.request_id))
            group.results.append(item.extension)
            if not item.extension.is_extended:
                group.status = ExtensionStatus.AT_RISK
        return groups


class ExtensionResolver:
    """Detects whether a later request re-grants an expiring product."""

    def __init__(self):
        self.logger = get_logger("reconciliation.extension")

    def resolve(self, item: EntitlementRecord, snapshots: Iterable[Snapshot]) -> ExtensionResult:
        """Classify an expiring entitlement as Extended or AtRisk.

        Candidates share the item's category and product code, come from a
        request other than the one holding the item, carry a different source
        request, and end strictly later. The latest end date wins,
        ties going to the highest request number.
        """
        if item.end_date is None:
            raise ValidationError(
                "Expiring entitlement has no usable end date",
                {"product_code": item.product_code, "request_id": item.owner_request_id}
            )

        best: Optional[Tuple[date, int, str]] = None
        owner = item.owner_request_id
        for snapshot in snapshots:
            if snapshot.request_number is None or snapshot.request_id == owner:
                continue
            for record in snapshot.entitlements:
                if (
                    record.category != item.category
                    or record.product_code != item.product_code
                    or record.source_request_id == item.source_request_id
                    or record.end_date is None
                    or record.end_date <= item.end_date
                ):
                    continue
                candidate = (record.end_date, snapshot.request_number, snapshot.request_id)
                if best is None or candidate[:2] > best[:2]:
                    best = candidate

        if best is None:
            return ExtensionResult(status=ExtensionStatus.AT_RISK, item=item)

        self.logger.debug(
            "Extension found",
            product_code=item.product_code,
            request_id=owner,
            by_request_id=best[2],
            new_end_date=best[0].isoformat()
        )
        return ExtensionResult(
            status=ExtensionStatus.EXTENDED,
            item=item,
            by_request_id=best[2],
            new_end_date=best[0],
        )

    def classify_group(
        self,
        group_key: str,
        items: Iterable[EntitlementRecord],
        snapshots: Iterable[Snapshot],
    ) -> GroupExtensionResult:
        """Classify a group: Extended only if every item is extended."""
        snapshots = list(snapshots)
        group = GroupExtensionResult(group_key=group_key)
        for item in items:
            result = self.resolve(item, snapshots)
            group.results.append(result)
            if not result.is_extended:
                group.status = ExtensionStatus.AT_RISK
        return group

    def find_expiring(
        self,
        snapshots: Iterable[Snapshot],
        as_of: date,
        window_days: int = 30,
    ) -> ExpirationReport:
        """Scan snapshots for entitlements ending within the window.

        Within one request the latest end date of a product counts. Products
        missing from a request created later for the same account are treated
        as removed and left out of the report.
        """
        report = ExpirationReport(as_of=as_of, window_days=window_days)
        threshold = as_of + timedelta(days=window_days)

        by_account: Dict[Optional[str], List[Snapshot]] = defaultdict(list)
        for snapshot in snapshots:
            if snapshot.request_number is None:
                self.logger.warning("Skipping unorderable snapshot", request_id=snapshot.request_id)
                continue
            by_account[snapshot.account].append(snapshot)

        for account, account_snapshots in by_account.items():
            report.snapshots_analyzed += len(account_snapshots)
            token = bind_account(account)
            try:
                for snapshot in account_snapshots:
                    self._scan_snapshot(report, account, snapshot, account_snapshots, threshold)
            finally:
                reset_account(token)

        report.items.sort(key=lambda i: (i.end_date, i.account or "", i.request_number, i.product_code))
        self.logger.info(
            "Expiration analysis complete",
            snapshots=report.snapshots_analyzed,
            expirations=len(report.items),
            extensions=report.extensions_found,
            removed_later=report.removed_in_later_request
        )
        return report

    def _scan_snapshot(
        self,
        report: ExpirationReport,
        account: Optional[str],
        snapshot: Snapshot,
        account_snapshots: List[Snapshot],
        threshold: date,
    ):
        latest: Dict[Tuple[Any, ...], EntitlementRecord] = {}
        for record in snapshot.entitlements:
            if record.end_date is None:
                continue
            report.entitlements_processed += 1
            key = record.identity_key
            if key not in latest or record.end_date > latest[key].end_date:
                latest[key] = record

        for record in latest.values():
            if not (report.as_of <= record.end_date <= threshold):
                continue

            if self._removed_later(record, snapshot, account_snapshots):
                report.removed_in_later_request += 1
                continue

            extension = self.resolve(record, account_snapshots)
            if extension.is_extended:
                report.extensions_found += 1

            report.items.append(ExpiringItem(
                account=account,
                request_id=snapshot.request_id,
                request_number=snapshot.request_number,
                end_date=record.end_date,
                days_until_expiry=(record.end_date - report.as_of).days,
                extension=extension,
            ))

    def _removed_later(
        self, record: EntitlementRecord, snapshot: Snapshot, account_snapshots: List[Snapshot]
    ) -> bool:
        if snapshot.created_at is None:
            return False
        return any(
            other.created_at is not None
            and other.created_at > snapshot.created_at
            and record.product_code not in other.product_codes()
            for other in account_snapshots
        )

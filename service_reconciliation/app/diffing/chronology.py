"""
Snapshot ordering: adjacent-pair history diffs and arbitrary pair resolution.
"""

from typing import List, Iterable, Optional
from collections import OrderedDict

from shared.logging import get_logger
from shared.errors import AmbiguousOrderingError
from .differ import PairwiseDiffer
from .models import ResolvedComparison, Snapshot


class ChronologicalComparator:
    """Diffs each snapshot against its immediate predecessor."""

    def __init__(self, differ: Optional[PairwiseDiffer] = None):
        self.differ = differ or PairwiseDiffer()
        self.logger = get_logger("reconciliation.chronology")

    def order(self, snapshots: Iterable[Snapshot]) -> List[Snapshot]:
        """Sort orderable snapshots by creation time, then request number."""
        orderable = []
        for snapshot in snapshots:
            if snapshot.is_orderable:
                orderable.append(snapshot)
            else:
                self.logger.warning(
                    "Skipping unorderable snapshot",
                    request_id=snapshot.request_id,
                    request_number=snapshot.request_number,
                    created_at=str(snapshot.created_at) if snapshot.created_at else None
                )
        return sorted(orderable, key=lambda s: s.chronological_key)

    def compare(
        self,
        snapshots: Iterable[Snapshot],
        skip_overlapping_app_dates: bool = False,
    ) -> "OrderedDict[str, ResolvedComparison]":
        """Diff every snapshot but the earliest against its predecessor.

        With ``skip_overlapping_app_dates`` snapshots whose app entitlements
        overlap in date range are left out, so the next valid snapshot is
        compared with the last valid one.
        """
        ordered = self.order(snapshots)
        if skip_overlapping_app_dates:
            valid = []
            for snapshot in ordered:
                if snapshot.has_overlapping_app_dates():
                    self.logger.info(
                        "Skipping snapshot with overlapping app date ranges",
                        request_id=snapshot.request_id
                    )
                else:
                    valid.append(snapshot)
            ordered = valid

        comparisons: "OrderedDict[str, ResolvedComparison]" = OrderedDict()
        for previous, current in zip(ordered, ordered[1:]):
            comparisons[current.request_id] = ResolvedComparison(
                previous=previous,
                current=current,
                diffs=self.differ.diff(previous.entitlements, current.entitlements),
            )

        self.logger.debug(
            "Chronological comparison complete",
            snapshots=len(ordered),
            comparisons=len(comparisons)
        )
        return comparisons


class PairResolver:
    """Settles which of two arbitrarily selected snapshots is current."""

    def __init__(self, differ: Optional[PairwiseDiffer] = None):
        self.differ = differ or PairwiseDiffer()
        self.logger = get_logger("reconciliation.pair_resolver")

    def resolve(self, first: Snapshot, second: Snapshot) -> ResolvedComparison:
        """Diff two snapshots; the larger request number is always current.

        Selecting the same request twice compares it with itself.
        """
        if first.request_id == second.request_id and first == second:
            previous, current = first, second
        elif (
            first.request_number is None
            or second.request_number is None
            or first.request_number == second.request_number
        ):
            raise AmbiguousOrderingError(
                first.request_id,
                second.request_id,
                {"request_numbers": [first.request_number, second.request_number]}
            )
        elif first.request_number > second.request_number:
            previous, current = second, first
        else:
            previous, current = first, second

        self.logger.debug(
            "Pair resolved",
            previous=previous.request_id,
            current=current.request_id
        )
        return ResolvedComparison(
            previous=previous,
            current=current,
            diffs=self.differ.diff(previous.entitlements, current.entitlements),
        )

"""
Entitlement reconciliation engine.

Single entry point wiring the extractor, differ, chronology, extension
resolver and change aggregator together with engine configuration.
"""

from functools import lru_cache
from typing import Dict, Any, Optional, List, Iterable
from collections import OrderedDict, defaultdict
from datetime import date, datetime, timedelta

from shared.config import EngineConfig, get_config
from shared.logging import (
    analysis_context, bind_account, configure_logging, get_logger, reset_account
)
from .extraction.extractor import EntitlementExtractor
from .diffing.models import EntitlementRecord, ResolvedComparison, Snapshot
from .diffing.differ import PairwiseDiffer
from .diffing.chronology import ChronologicalComparator, PairResolver
from .expiration.resolver import (
    ExtensionResolver, ExtensionResult, ExpirationReport, GroupExtensionResult
)
from .analytics.aggregator import (
    AggregationResult, AggregationWindow, ChangeAggregator, ChangeClassifier,
    ChangeRecord, package_tier_classifier
)


class ReconciliationEngine:
    """Read-only reconciliation over provisioning request snapshots."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or get_config()
        self.logger = get_logger("reconciliation.engine")

        self.extractor = EntitlementExtractor(self.config.multi_instance_product_codes)
        self.differ = PairwiseDiffer()
        self.chronology = ChronologicalComparator(self.differ)
        self.pair_resolver = PairResolver(self.differ)
        self.extension_resolver = ExtensionResolver()

    def extract(self, payload: Any, request_id: str, **metadata) -> Snapshot:
        """Build a snapshot from a raw request payload."""
        return self.extractor.extract(payload, request_id, **metadata)

    def diff_two_snapshots(self, first: Snapshot, second: Snapshot) -> ResolvedComparison:
        """Compare two snapshots selected in any order."""
        return self.pair_resolver.resolve(first, second)

    def diff_chronologically(
        self,
        snapshots: Iterable[Snapshot],
        skip_overlapping_app_dates: bool = False,
    ) -> "OrderedDict[str, ResolvedComparison]":
        """Compare each snapshot with its predecessor, keyed by request id."""
        return self.chronology.compare(snapshots, skip_overlapping_app_dates)

    def resolve_extension(self, item: EntitlementRecord, snapshots: Iterable[Snapshot]) -> ExtensionResult:
        """Decide whether an expiring entitlement has been extended."""
        return self.extension_resolver.resolve(item, snapshots)

    def classify_group(
        self, group_key: str, items: Iterable[EntitlementRecord], snapshots: Iterable[Snapshot]
    ) -> GroupExtensionResult:
        return self.extension_resolver.classify_group(group_key, items, snapshots)

    def find_expiring(
        self,
        snapshots: Iterable[Snapshot],
        as_of: Optional[date] = None,
        window_days: Optional[int] = None,
    ) -> ExpirationReport:
        """Report entitlements expiring soon with their extension status.

        Snapshots created before the configured lookback are ignored.
        """
        as_of = as_of or date.today()
        cutoff = as_of - timedelta(days=365 * self.config.expiration_lookback_years)

        with analysis_context():
            recent = []
            for snapshot in snapshots:
                if snapshot.created_at is not None and snapshot.created_at.date() < cutoff:
                    self.logger.debug("Snapshot outside expiration lookback", request_id=snapshot.request_id)
                    continue
                recent.append(snapshot)

            return self.extension_resolver.find_expiring(
                recent,
                as_of,
                self.config.expiration_window_days if window_days is None else window_days,
            )

    def aggregate(
        self,
        records: Iterable[ChangeRecord],
        window: Optional[AggregationWindow] = None,
        classifier: ChangeClassifier = package_tier_classifier,
        recent_limit: Optional[int] = None,
        account_limit: Optional[int] = None,
    ) -> AggregationResult:
        """Roll change records up by product, account and recency."""
        aggregator = ChangeAggregator(classifier)
        return aggregator.aggregate(
            records,
            window=window,
            recent_limit=self.config.recent_changes_limit if recent_limit is None else recent_limit,
            account_limit=account_limit,
        )

    def analyze_package_changes(
        self,
        snapshots: Iterable[Snapshot],
        window: Optional[AggregationWindow] = None,
        classifier: ChangeClassifier = package_tier_classifier,
        recent_limit: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> AggregationResult:
        """Run chronological comparisons per deployment and aggregate them.

        Defaults to the configured package change lookback window.
        """
        with analysis_context():
            if window is None:
                window = AggregationWindow.lookback(self.config.package_change_lookback_years, as_of)

            by_deployment: Dict[str, List[Snapshot]] = defaultdict(list)
            for snapshot in snapshots:
                key = snapshot.deployment or snapshot.tenant_name
                if not key:
                    self.logger.warning("Skipping snapshot without deployment", request_id=snapshot.request_id)
                    continue
                by_deployment[key].append(snapshot)

            aggregator = ChangeAggregator(classifier)
            records: List[ChangeRecord] = []
            for deployment in sorted(by_deployment):
                deployment_snapshots = by_deployment[deployment]
                token = bind_account(deployment_snapshots[0].account)
                try:
                    comparisons = self.diff_chronologically(
                        deployment_snapshots,
                        skip_overlapping_app_dates=self.config.skip_overlapping_app_dates,
                    )
                    records.extend(aggregator.build_change_records(
                        comparisons.values(),
                        collapse_repeated_transitions=self.config.collapse_repeated_transitions,
                    ))
                finally:
                    reset_account(token)

            self.logger.info(
                "Package change records built",
                deployments=len(by_deployment),
                records=len(records)
            )
            return aggregator.aggregate(
                records,
                window=window,
                recent_limit=self.config.recent_changes_limit if recent_limit is None else recent_limit,
            )


@lru_cache()
def get_engine() -> ReconciliationEngine:
    """Get the process-wide engine built from the default configuration."""
    config = get_config()
    configure_logging("reconciliation", config.log_level, json_logs=config.env != "local")
    return ReconciliationEngine(config)


def diff_two_snapshots(first: Snapshot, second: Snapshot) -> ResolvedComparison:
    return get_engine().diff_two_snapshots(first, second)


def diff_chronologically(snapshots: Iterable[Snapshot]) -> "OrderedDict[str, ResolvedComparison]":
    return get_engine().diff_chronologically(snapshots)


def resolve_extension(item: EntitlementRecord, snapshots: Iterable[Snapshot]) -> ExtensionResult:
    return get_engine().resolve_extension(item, snapshots)


def aggregate(
    records: Iterable[ChangeRecord],
    window: Optional[AggregationWindow] = None,
    classifier: ChangeClassifier = package_tier_classifier,
) -> AggregationResult:
    return get_engine().aggregate(records, window, classifier)

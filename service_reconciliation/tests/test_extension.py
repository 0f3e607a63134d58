"""
Unit tests for extension detection.
"""

import pytest
from datetime import date

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import ValidationError
from shared.test_helpers import TestDataFactory
from service_reconciliation.app.extraction.extractor import EntitlementExtractor
from service_reconciliation.app.expiration.resolver import ExtensionResolver, ExtensionStatus
from service_reconciliation.app.diffing.models import Category


class TestExtensionResolver:
    """Test cases for ExtensionResolver."""

    @pytest.fixture
    def resolver(self):
        """Create ExtensionResolver instance."""
        return ExtensionResolver()

    @pytest.fixture
    def extractor(self):
        return EntitlementExtractor()

    @pytest.fixture
    def expiring_snapshot(self, extractor):
        """Snapshot granting DATA-001 until 2025-06-30."""
        return extractor.extract(
            TestDataFactory.payload(
                data=[TestDataFactory.data("DATA-001", end="2025-06-30")],
                models=[TestDataFactory.model("MODEL-ABC", end="2025-06-30")],
            ),
            "PS-100",
            created_at="2024-07-01T00:00:00Z",
            account="Acme Insurance",
        )

    def _snapshot(self, extractor, request_id, created_at, **categories):
        return extractor.extract(
            TestDataFactory.payload(**categories), request_id,
            created_at=created_at, account="Acme Insurance"
        )

    def test_extended_by_later_request(self, resolver, extractor, expiring_snapshot):
        """Test a later grant with later end date extends the item."""
        renewal = self._snapshot(
            extractor, "PS-200", "2025-05-01T00:00:00Z",
            data=[TestDataFactory.data("DATA-001", end="2026-06-30")]
        )
        item = expiring_snapshot.entitlements_for(Category.DATA)[0]

        result = resolver.resolve(item, [expiring_snapshot, renewal])

        assert result.status == ExtensionStatus.EXTENDED
        assert result.by_request_id == "PS-200"
        assert result.new_end_date == date(2026, 6, 30)

    def test_at_risk_without_later_grant(self, resolver, expiring_snapshot):
        """Test an item with no later grant is at risk."""
        item = expiring_snapshot.entitlements_for(Category.DATA)[0]

        result = resolver.resolve(item, [expiring_snapshot])

        assert result.status == ExtensionStatus.AT_RISK
        assert result.by_request_id is None
        assert result.new_end_date is None

    def test_same_or_earlier_end_date_is_not_extension(self, resolver, extractor, expiring_snapshot):
        """Test an end date must be strictly later."""
        same = self._snapshot(
            extractor, "PS-200", "2025-05-01T00:00:00Z",
            data=[TestDataFactory.data("DATA-001", end="2025-06-30")]
        )
        item = expiring_snapshot.entitlements_for(Category.DATA)[0]

        assert resolver.resolve(item, [expiring_snapshot, same]).status == ExtensionStatus.AT_RISK

    def test_other_category_does_not_extend(self, resolver, extractor, expiring_snapshot):
        """Test a matching code in another category is ignored."""
        other = self._snapshot(
            extractor, "PS-200", "2025-05-01T00:00:00Z",
            models=[TestDataFactory.model("DATA-001", end="2027-01-01")]
        )
        item = expiring_snapshot.entitlements_for(Category.DATA)[0]

        assert resolver.resolve(item, [other]).status == ExtensionStatus.AT_RISK

    def test_latest_end_date_wins(self, resolver, extractor, expiring_snapshot):
        """Test the candidate with latest end date is reported."""
        first = self._snapshot(
            extractor, "PS-300", "2025-05-01T00:00:00Z",
            data=[TestDataFactory.data("DATA-001", end="2026-06-30")]
        )
        second = self._snapshot(
            extractor, "PS-200", "2025-04-01T00:00:00Z",
            data=[TestDataFactory.data("DATA-001", end="2027-06-30")]
        )
        item = expiring_snapshot.entitlements_for(Category.DATA)[0]

        result = resolver.resolve(item, [first, second])

        assert result.by_request_id == "PS-200"
        assert result.new_end_date == date(2027, 6, 30)

    def test_tie_goes_to_highest_request_number(self, resolver, extractor, expiring_snapshot):
        """Test equal end dates resolve to the highest request number."""
        low = self._snapshot(
            extractor, "PS-200", "2025-05-01T00:00:00Z",
            data=[TestDataFactory.data("DATA-001", end="2026-06-30")]
        )
        high = self._snapshot(
            extractor, "PS-300", "2025-04-01T00:00:00Z",
            data=[TestDataFactory.data("DATA-001", end="2026-06-30")]
        )
        item = expiring_snapshot.entitlements_for(Category.DATA)[0]

        assert resolver.resolve(item, [high, low]).by_request_id == "PS-300"

    def test_unorderable_snapshot_ignored(self, resolver, extractor, expiring_snapshot):
        """Test snapshots without request number cannot extend."""
        draft = self._snapshot(
            extractor, "DRAFT", "2025-05-01T00:00:00Z",
            data=[TestDataFactory.data("DATA-001", end="2026-06-30")]
        )
        item = expiring_snapshot.entitlements_for(Category.DATA)[0]

        assert resolver.resolve(item, [draft]).status == ExtensionStatus.AT_RISK

    def test_unparsable_candidate_date_ignored(self, resolver, extractor, expiring_snapshot):
        """Test candidates with unparsable end dates are ignored."""
        bad = self._snapshot(
            extractor, "PS-200", "2025-05-01T00:00:00Z",
            data=[TestDataFactory.data("DATA-001", end="forever")]
        )
        item = expiring_snapshot.entitlements_for(Category.DATA)[0]

        assert resolver.resolve(item, [bad]).status == ExtensionStatus.AT_RISK

    def test_item_without_end_date_rejected(self, resolver, extractor):
        """Test resolving an item with unknown end date raises."""
        snapshot = self._snapshot(
            extractor, "PS-100", "2024-05-01T00:00:00Z",
            data=[TestDataFactory.data("DATA-001", end="unknown")]
        )

        with pytest.raises(ValidationError):
            resolver.resolve(snapshot.entitlements[0], [snapshot])

    def test_carried_instance_not_extended_by_own_request(self, resolver, extractor):
        """Test a carried instance ignores other instances in the request holding it."""
        snapshot = self._snapshot(
            extractor, "PS-200", "2024-11-20T00:00:00Z",
            apps=[
                TestDataFactory.app("IC-DATABRIDGE", end="2025-06-30", sourceRequestId="PS-100"),
                TestDataFactory.app("IC-DATABRIDGE", start="2025-07-01", end="2026-06-30"),
            ]
        )
        carried = snapshot.entitlements[0]

        assert carried.source_request_id == "PS-100"
        assert carried.owner_request_id == "PS-200"
        assert resolver.resolve(carried, [snapshot]).status == ExtensionStatus.AT_RISK

        regrant = self._snapshot(
            extractor, "PS-300", "2025-05-01T00:00:00Z",
            apps=[TestDataFactory.app("IC-DATABRIDGE", end="2026-12-31")]
        )
        result = resolver.resolve(carried, [snapshot, regrant])

        assert result.status == ExtensionStatus.EXTENDED
        assert result.by_request_id == "PS-300"

    def test_group_extended_only_when_all_extended(self, resolver, extractor, expiring_snapshot):
        """Test one unresolved item flips the group to at risk."""
        renewal = self._snapshot(
            extractor, "PS-200", "2025-05-01T00:00:00Z",
            data=[TestDataFactory.data("DATA-001", end="2026-06-30")]
        )

        group = resolver.classify_group("PS-100", expiring_snapshot.entitlements, [expiring_snapshot, renewal])

        assert group.status == ExtensionStatus.AT_RISK
        assert [r.item.product_code for r in group.at_risk] == ["MODEL-ABC"]

        data_only = resolver.classify_group(
            "PS-100", expiring_snapshot.entitlements_for(Category.DATA), [expiring_snapshot, renewal]
        )
        assert data_only.status == ExtensionStatus.EXTENDED

    def test_empty_group_is_extended(self, resolver):
        """Test an empty group keeps the default classification."""
        assert resolver.classify_group("PS-100", [], []).status == ExtensionStatus.EXTENDED


class TestFindExpiring:
    """Test cases for the expiring entitlement scan."""

    @pytest.fixture
    def resolver(self):
        return ExtensionResolver()

    @pytest.fixture
    def extractor(self):
        return EntitlementExtractor()

    def test_window_and_extension(self, resolver, extractor):
        """Test items inside the window are reported with extension status."""
        original = extractor.extract(
            TestDataFactory.payload(
                data=[TestDataFactory.data("DATA-001", end="2025-06-30")],
                models=[TestDataFactory.model("MODEL-ABC", end="2025-06-20")],
                apps=[TestDataFactory.app("APP-XYZ", end="2026-01-01")],
            ),
            "PS-100", created_at="2024-07-01T00:00:00Z", account="Acme Insurance",
        )
        renewal = extractor.extract(
            TestDataFactory.payload(
                data=[TestDataFactory.data("DATA-001", end="2026-06-30")],
                models=[TestDataFactory.model("MODEL-ABC", end="2025-06-20")],
                apps=[TestDataFactory.app("APP-XYZ", end="2026-01-01")],
            ),
            "PS-200", created_at="2025-05-01T00:00:00Z", account="Acme Insurance",
        )

        report = resolver.find_expiring([original, renewal], as_of=date(2025, 6, 1), window_days=30)

        reported = [(i.request_id, i.product_code, i.extension.status) for i in report.items]
        assert reported == [
            ("PS-100", "MODEL-ABC", ExtensionStatus.AT_RISK),
            ("PS-200", "MODEL-ABC", ExtensionStatus.AT_RISK),
            ("PS-100", "DATA-001", ExtensionStatus.EXTENDED),
        ]
        assert report.extensions_found == 1
        assert report.entitlements_processed == 6
        assert report.items[0].days_until_expiry == 19
        assert len(report.at_risk) == 2

        groups = report.by_request()
        assert groups["PS-100"].status == ExtensionStatus.AT_RISK
        assert groups["PS-200"].status == ExtensionStatus.AT_RISK

    def test_max_end_date_per_product(self, resolver, extractor):
        """Test several line items of one product use the latest end date."""
        snapshot = extractor.extract(
            TestDataFactory.payload(apps=[
                TestDataFactory.app("APP-XYZ", end="2025-06-10"),
                TestDataFactory.app("APP-XYZ", end="2027-01-01"),
            ]),
            "PS-100", created_at="2024-07-01T00:00:00Z",
        )

        report = resolver.find_expiring([snapshot], as_of=date(2025, 6, 1), window_days=30)

        assert report.items == []

    def test_removed_in_later_request_filtered(self, resolver, extractor):
        """Test products dropped by a later request are not reported."""
        original = extractor.extract(
            TestDataFactory.payload(data=[TestDataFactory.data("DATA-001", end="2025-06-30")]),
            "PS-100", created_at="2024-07-01T00:00:00Z", account="Acme Insurance",
        )
        later = extractor.extract(
            TestDataFactory.payload(data=[TestDataFactory.data("DATA-777", end="2027-06-30")]),
            "PS-200", created_at="2025-01-01T00:00:00Z", account="Acme Insurance",
        )

        report = resolver.find_expiring([original, later], as_of=date(2025, 6, 1), window_days=30)

        assert report.items == []
        assert report.removed_in_later_request == 1

    def test_accounts_are_isolated(self, resolver, extractor):
        """Test a grant for another account does not extend."""
        acme = extractor.extract(
            TestDataFactory.payload(data=[TestDataFactory.data("DATA-001", end="2025-06-30")]),
            "PS-100", created_at="2024-07-01T00:00:00Z", account="Acme Insurance",
        )
        other = extractor.extract(
            TestDataFactory.payload(data=[TestDataFactory.data("DATA-001", end="2026-06-30")]),
            "PS-200", created_at="2025-01-01T00:00:00Z", account="Globex Re",
        )

        report = resolver.find_expiring([acme, other], as_of=date(2025, 6, 1), window_days=30)

        assert [(i.account, i.extension.status) for i in report.items] == [
            ("Acme Insurance", ExtensionStatus.AT_RISK)
        ]
        assert report.snapshots_analyzed == 2

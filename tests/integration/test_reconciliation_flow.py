"""
Integration tests for the reconciliation flow: raw payloads to comparisons,
expirations and package change aggregates.
"""

import pytest
import json
from datetime import date, datetime, timezone

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.config import EngineConfig
from shared.test_helpers import TestDataFactory
from service_reconciliation.app.engine import ReconciliationEngine
from service_reconciliation.app.diffing.models import Category, DiffStatus
from service_reconciliation.app.expiration.resolver import ExtensionStatus


class TestReconciliationFlow:
    """Integration tests for the reconciliation flow."""

    @pytest.fixture
    def engine(self):
        return ReconciliationEngine(EngineConfig())

    @pytest.fixture
    def raw_requests(self):
        """Requests as delivered by the CRM: JSON strings plus metadata."""
        factory = TestDataFactory
        return [
            ("PS-4600", "2024-02-01T10:00:00.000+0000", factory.payload_json(
                models=[factory.model("MODEL-ABC", end="2025-03-31")],
                data=[factory.data("DATA-001", end="2025-03-31")],
                apps=[
                    factory.app("APP-XYZ", package_name="Standard", quantity=5, end="2025-03-31"),
                    factory.app("IC-DATABRIDGE", quantity=1, end="2025-03-31"),
                ],
            )),
            ("PS-4640", "2024-09-15T10:00:00.000+0000", factory.payload_json(
                models=[factory.model("MODEL-ABC", end="2025-03-31")],
                data=[factory.data("DATA-001", end="2026-03-31")],
                apps=[
                    factory.app("APP-XYZ", package_name="Premium", quantity=5, end="2025-03-31"),
                    factory.app("IC-DATABRIDGE", quantity=1, end="2025-03-31", sourceRequestId="PS-4600"),
                    factory.app("IC-DATABRIDGE", quantity=2, start="2025-04-01", end="2026-03-31"),
                ],
            )),
            ("PS-4700", "2024-12-01T10:00:00.000+0000", "{truncated"),
        ]

    @pytest.fixture
    def snapshots(self, engine, raw_requests):
        return [
            engine.extract(
                payload, request_id,
                created_at=created_at, account="Acme Insurance", deployment="DEP-001"
            )
            for request_id, created_at, payload in raw_requests
        ]

    def test_end_to_end_flow(self, engine, snapshots):
        """Test payloads flow through pairwise and chronological comparison."""
        first, second, broken = snapshots
        assert broken.entitlements == ()
        assert len(second.entitlements_for(Category.APP)) == 3

        # Arbitrary pair, selected newest first
        comparison = engine.diff_two_snapshots(second, first)
        assert comparison.previous.request_id == "PS-4600"
        summary = comparison.summary()
        assert summary["Added"] == 1
        assert summary["Updated"] == 2

        bridges = [e for e in comparison.diffs[Category.APP] if e.product_code == "IC-DATABRIDGE"]
        assert [e.status for e in bridges] == [DiffStatus.UNCHANGED, DiffStatus.ADDED]

        # Chronology: the undecodable request compares as empty
        comparisons = engine.diff_chronologically(snapshots)
        assert list(comparisons) == ["PS-4640", "PS-4700"]
        assert all(e.status == DiffStatus.REMOVED for e in comparisons["PS-4700"].entries())

    def test_expiration_flow(self, engine, snapshots):
        """Test expiring products are checked for extensions."""
        valid = snapshots[:2]

        report = engine.find_expiring(valid, as_of=date(2025, 3, 1))

        statuses = {(i.request_id, i.product_code): i.extension.status for i in report.items}
        assert statuses[("PS-4600", "DATA-001")] == ExtensionStatus.EXTENDED
        assert statuses[("PS-4600", "APP-XYZ")] == ExtensionStatus.AT_RISK
        assert ("PS-4640", "DATA-001") not in statuses

        extension = next(i.extension for i in report.items if i.product_code == "DATA-001")
        assert extension.by_request_id == "PS-4640"
        assert extension.new_end_date == date(2026, 3, 31)

    def test_package_change_flow(self, engine, snapshots):
        """Test package upgrades are aggregated per account and product."""
        result = engine.analyze_package_changes(
            snapshots[:2], as_of=datetime(2025, 1, 1, tzinfo=timezone.utc)
        )

        assert result.upgrades_found == 1
        assert result.changes_found == 2
        product_keys = [n.scope_key for n in result.by_product]
        assert set(product_keys) == {"APP-XYZ", "DATA-001"}

        account = result.by_account[0]
        assert account.total_changes == sum(child.total_changes for child in account.children)

        payload = json.loads(result.model_dump_json())
        assert payload["recent"][0]["request_id"] == "PS-4640"

"""
Reconciliation service package for provisioning request entitlements.

This package compares the product entitlements captured by provisioning
requests over time. It provides:

- app.extraction: Payload decoding and normalization into snapshots.
- app.diffing: Snapshot models, the pairwise differ, and ordering logic.
- app.expiration: Extension detection for expiring entitlements.
- app.analytics: Package change roll-ups by product and account.
- app.engine: Facade exposing the public operations.

Guidelines:
- The engine is read-only; snapshots are never mutated.
- No I/O happens here; callers supply already-fetched requests.
- Keep outputs deterministic (sorted by product code, stable tie-breaks).
"""

"""
Extraction package.

Turns raw provisioning request payloads into immutable snapshots. Missing
or malformed entitlement categories degrade to empty lists, and dates that
cannot be parsed are kept raw so they still take part in diffing.
"""

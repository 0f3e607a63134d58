"""
Expiration package: extension detection for expiring entitlements.
"""

"""
Analytics package: package change aggregation over diff results.
"""

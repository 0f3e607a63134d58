"""
Diffing package.

Defines the entitlement and snapshot models together with the pairwise
differ, the chronological comparator and the arbitrary pair resolver.

Modules of interest:
- models: Categories, attribute schemas, snapshots and diff entries.
- differ: Added/Removed/Updated/Unchanged classification per category.
- chronology: Adjacent-pair history diffs and pair direction resolution.
"""

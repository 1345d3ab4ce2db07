"""
Replication and reconciliation engine for the family dataset.

Keeps the record store mirrored into a version-controlled target (with a
retry queue and backup retention) and recomputes which monarchs reigned
during each family member's lifetime.
"""

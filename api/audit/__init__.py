"""
Append-only audit trail.
"""

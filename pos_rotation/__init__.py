"""
pos_rotation: scheduled rotation of POS provider credentials.

Renews each due credential with its provider, validates the new token and
swaps the stored secret in a single idempotent transaction, guarded by a
global and a per-location circuit breaker.
"""

__version__ = "0.3.0"

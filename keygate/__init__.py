"""
KeyGate

Issues single-use, time-bounded access keys and redeems each key at most
once, with an append-only audit trail of every lifecycle event.
"""

__version__ = "1.0.0"

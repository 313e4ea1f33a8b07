"""
Account Ledger

A small ledger of pre-provisioned accounts with a per-account atomic
transaction protocol and bounded statements of recent activity.
"""

__version__ = "1.0.0"

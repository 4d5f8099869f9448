"""
Core modules for ARR Report.

This package contains period construction, billing-window and annualization
rules, currency normalization, the ledger sync cache and report aggregation.
"""

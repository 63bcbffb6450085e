"""
Recon Kernel

Persistence and domain core for deposit-to-revenue-schedule reconciliation:
- Revenue schedules, deposits, deposit line items and match records
- Append-only match groups with group-level reversal
- Structured logging and typed error taxonomy
"""

__version__ = "0.1.0"

"""
BuildLedger invoicing core.

Quotes and invoices for small contractors: money calculation, the document
status lifecycle, the payment ledger and webhook-driven reconciliation with
the payment processor.
"""

__version__ = "0.4.0"

"""
Bookkeeping - Source Package

Payment allocation and debt reconciliation for a small-business
bookkeeping tool: contacts, invoices (sales/purchase), payments
(income/expense) and the allocations linking them.

DESIGN PRINCIPLES:
1. Status is derived from allocations, never stored
2. Every mutation is all-or-nothing
3. Validation reports a typed reason and never half-applies
4. Every mutation is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Bookkeeping Team"

"""
Loanbook - Source Package

Lifecycle and payment-reconciliation engine for personal loans
between friends, family and contacts.

DESIGN PRINCIPLES:
1. Lender proposes → Borrower accepts → Lender confirms every payment
2. Every transition is a compare-and-swap on status
3. Side effects (contacts, notifications) never block a transition
4. Every step must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Loanbook Team"

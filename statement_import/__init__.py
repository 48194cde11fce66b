"""
Statement Import - Source Package

Turns uploaded bank statements into reviewed, confidence-scored
transaction candidates, and materializes the ones a user confirms
into the expense ledger.

DESIGN PRINCIPLES:
1. Rules first, AI only for what rules cannot settle
2. A row is trusted only if EVERY field is trusted
3. Nothing reaches the ledger without a confirmation, and never twice
4. A pipeline failure is visible, never partial
5. Every step must be auditable
"""

__version__ = "1.0.0"
__author__ = "Statement Import Team"

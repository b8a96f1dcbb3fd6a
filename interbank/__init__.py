"""
Interbank Ledger Service

A retail-bank ledger that settles transfers with counterpart banks using
RS256-signed transfer tokens, published JSON Web Key Sets and a central
bank registry.
"""

__version__ = "1.0.0"

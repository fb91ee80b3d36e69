"""
Tabletop settlement: payment settlement and coin reward ledger for a
multi-tenant restaurant ordering backend.
"""

__version__ = "2.0.0"

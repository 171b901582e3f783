"""
fiscal_ledger — tamper-evident fiscal audit trail and digital signing core.

Keeps a per-tenant hash-chained ledger of fiscal documents, signs every
entry with an HMAC integrity signature, signs regime envelopes with
certificates exported transiently from the OS store, submits them to the
fiscal authority and enforces legal retention of the records.

Built on the Railway-Oriented Programming (ROP) framework for
explicit, composable, functional error handling at the I/O edges.
"""

__version__ = "0.1.0"

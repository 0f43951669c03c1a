"""Sign-In transfer migration.

Exchanges legacy Sign-In provider identifiers for portable transfer tokens,
persists them to the ``transfer_migration`` table, and writes one CSV row per
user for the receiving identity system to import.
"""

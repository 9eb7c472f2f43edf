"""
Migration versions package.

Each module holds one MigrationBase subclass. Units are append-only: once a
version has shipped it is never edited, renumbered or removed.

Naming convention: vXXX_description.py (e.g., v005_api_keys.py)
"""

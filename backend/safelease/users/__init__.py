"""User directory (read-mostly view of SafeLease accounts).

Services:
    - UserDirectory: DuckDB-backed lookup of sender display identities.
"""

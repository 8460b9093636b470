"""SQLite persistence: connection pool, DDL, filters and repositories.

Repository functions take an open connection and never commit; transaction
boundaries belong to :class:`~audited_db.database.AuditedDatabase` and the
sync engine.
"""

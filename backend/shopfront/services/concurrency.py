# Overview: Row locking helper for settlement reads that precede a write.

from __future__ import annotations


def lock_for_update(query):
    """
    Apply row-level locking to a query that reads a row it is about to change.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; the conditional UPDATEs in
    catalog_service/account_service and the version_id columns still keep
    stock, balances and pending payments correct there.
    """
    return query.with_for_update()

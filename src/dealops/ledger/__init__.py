"""Deal ledger module -- models, schemas, repository and reconciliation routines.

Provides SQLAlchemy models for contacts, deals, transactions and the
reconciliation bookkeeping tables, LedgerRepository for async persistence,
and one service per routine: name/contact matching, orphan transaction
promotion, duplicate stage-change detection, rule-based deal replication,
batch lead distribution, and CSV import.
"""

"""
crm_sync.sync - Contact model, merging and the sync engine.

The engine, upserter and job ledger live in their own modules
(crm_sync.sync.engine, crm_sync.sync.upsert, crm_sync.sync.jobs) and
are imported from there.
"""

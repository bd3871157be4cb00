"""
BOQ reconcile module - import parsed sections into the final-account ledger.

Submodules:
- boq_reconcile: request-facing import/merge/reconcile/cancel entry point
- boq_reconcile_engine: Reconciliation Engine (replace and merge imports)
- boq_reconcile_status: match percentage, bands and summaries
- boq_reconcile_models: Pydantic data models for statuses and import summaries
- import_session: import wizard state machine
- job_queue_integration / job_processors: batch imports as queued jobs
"""

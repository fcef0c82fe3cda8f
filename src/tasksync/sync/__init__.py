"""Sync cycle: ledger, lease, orchestrator and periodic trigger."""

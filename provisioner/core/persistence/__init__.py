"""Audit ledger and last-run state file."""

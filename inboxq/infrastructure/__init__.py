"""Persistence, ledger and retry infrastructure."""

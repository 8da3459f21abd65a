"""Webhook intake, ledger, retry and mirroring services."""

"""PaySync: payment processor webhook ingestion, ledger and retry workers."""

__version__ = "0.1.0"

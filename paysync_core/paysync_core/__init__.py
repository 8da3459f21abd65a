"""PaySync core: persistence, event kinds and retry policy."""

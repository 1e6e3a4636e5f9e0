"""Best-effort anchoring of document fingerprints on a public ledger."""

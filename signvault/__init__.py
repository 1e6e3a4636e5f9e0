"""SignVault capture-and-anchor service.

Receives completion webhooks from e-signature providers, downloads the signed
document, fingerprints and stores it, and anchors the fingerprint on a public
ledger.
"""

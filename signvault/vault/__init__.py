"""Vaulting: blob storage, fingerprinting, audit trail and verification."""

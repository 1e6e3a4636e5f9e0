"""Alembic migration scripts for the SignVault database."""

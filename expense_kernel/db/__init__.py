"""Persistence infrastructure: declarative base, engine, ledger guards."""

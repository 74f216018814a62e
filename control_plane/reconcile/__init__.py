"""Reconciliation loops."""

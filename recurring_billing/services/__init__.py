"""Billing engine and its collaborators."""

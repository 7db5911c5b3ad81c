"""Utility helpers shared by the API and the account flows."""

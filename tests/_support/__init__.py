"""Shared test helpers (fakes and async utilities)."""

"""Taskflow API: Stripe webhook reconciliation, self-serve billing and health."""

__version__ = "0.1.0"

"""taskflow-sync core engine: change-feed cache invalidation and billing state."""

__version__ = "0.1.0"

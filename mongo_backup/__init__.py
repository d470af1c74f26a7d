"""MongoDB -> PostgreSQL backup mirror with soft-delete recovery."""

__version__ = "0.1.0"

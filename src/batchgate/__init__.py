"""batchgate: permissioned lifecycle for manufacturing batches."""

__version__ = "0.1.0"

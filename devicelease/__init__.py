"""Device pool allocation and per-test data isolation for parallel UI test runs."""

__version__ = "0.1.0"

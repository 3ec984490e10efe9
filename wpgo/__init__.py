"""WordPress site management building blocks: host adapters, batch execution, reports and a result cache."""

__version__ = "0.1.0"
__all__ = ["adapter", "batch", "report", "cache"]
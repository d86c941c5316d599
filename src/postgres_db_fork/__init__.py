"""PostgreSQL database forking for CI/CD and branch workflows."""

__version__ = "0.1.0"

__all__ = ["__version__"]

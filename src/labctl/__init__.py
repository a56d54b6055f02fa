"""labctl: declarative, resumable provisioning for small lab fleets."""
from __future__ import annotations

__all__ = ["__version__"]

# Keep in step with ``version`` in pyproject.toml.
__version__ = "0.1.0"

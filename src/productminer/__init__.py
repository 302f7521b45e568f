"""ProductMiner: LLM-driven product data extraction from e-commerce pages."""

from ._version import __version__

__all__ = ["__version__"]

"""Image mirror that samples upstream waifu APIs into a local deduplicated catalog."""

__version__ = "0.1.0"

__all__ = ["__version__"]

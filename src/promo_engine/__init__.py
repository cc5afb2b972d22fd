"""promo_engine: render pipeline for short vertical music-video promos."""

__all__ = ["__version__"]

__version__ = "0.1.0"

"""SPECLOOP: autonomous OpenSpec apply loop driven by Beads."""

from specloop.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]

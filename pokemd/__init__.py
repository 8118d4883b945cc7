"""pokemd: relay HTTP notifications into Matrix rooms."""

__version__ = "1.2.0"

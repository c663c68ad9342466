"""sitepipe - declarative site publishing pipeline engine."""

__version__ = "0.1.0"

"""Device-side SDK for exchanging files and firmware with a WolkAbout-style platform."""

__version__ = "0.1.0"

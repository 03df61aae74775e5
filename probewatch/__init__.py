"""probewatch — command-probe service monitor."""

__version__ = "0.1.0"

"""Virtual datacenter lifecycle manager."""

__version__ = "0.3.0"

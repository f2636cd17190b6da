"""Music Store backend: inventory reservation, purchases and prepaid balance."""

__version__ = "1.0.0"

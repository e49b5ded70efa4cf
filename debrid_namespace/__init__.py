"""Virtual folder namespace over a real-debrid account."""
__version__ = "1.0.0"

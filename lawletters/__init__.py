"""Talk to My Lawyer - legal letter generation API."""

__version__ = "1.0.0"

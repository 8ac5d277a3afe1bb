"""Edge request-admission gateway for the school portal API."""

__version__ = "0.1.0"

"""PressBox: local WordPress environments on top of PHP's built-in server."""

__version__ = "0.1.0"

"""
Quotes blueprint package.

This file just exposes the Blueprint object to be imported in billing.__init__.
The actual routes are in routes.py.
"""

from .routes import quotes_bp  # noqa: F401

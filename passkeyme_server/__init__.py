"""Multi-tenant passkey (WebAuthn) ceremony and token service.

``create_app`` builds the Flask application; ``main`` runs it as a
standalone server (the ``passkeyme-server`` console script).
"""

from .app import create_app, main

__all__ = ["__version__", "create_app", "main"]

__version__ = "0.1.0"

"""
Tiime CardDAV - Expose Tiime clients and contacts as CardDAV address books.

This package provides a small CardDAV gateway that authenticates requests
against the Tiime API and renders Tiime client records as vCards.
"""

__version__ = "1.0.0"
__author__ = "Tiime CardDAV Team"

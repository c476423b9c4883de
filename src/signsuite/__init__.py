"""SignSuite encrypted blob storage.

Transparent encryption-at-rest for the document-signing application's
binary object storage: every object is sealed with AES-256-GCM before it
reaches the backend, and objects written before encryption was enabled
remain readable.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]

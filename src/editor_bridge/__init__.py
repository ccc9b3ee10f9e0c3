"""
Editor Bridge package.

A local FastAPI service that lets a browser-hosted office editor open and save
files on disk: documents are converted to the editor binary by the external
x2t converter, cached per path fingerprint, and converted back on save.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"

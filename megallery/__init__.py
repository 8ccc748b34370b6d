"""megallery: similarity-layout image gallery backend."""

__version__ = "0.1.0"

"""File Lister - enumerate folders, preview files and manage them in bulk."""

__version__ = "0.3.0"

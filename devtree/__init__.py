"""Device tree model, flattened blob reader and writer, directory reader and format helpers."""

__version__ = "1.6.1"
__all__ = ["flattree", "formats", "fstree", "tree"]
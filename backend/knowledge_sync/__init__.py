"""Knowledge Sync backend: mirrors remote document trees and downloads subscribed files."""

__version__ = "1.0.0"

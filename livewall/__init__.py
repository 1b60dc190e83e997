"""Live wall: event photo collection, moderation and slideshow display."""

__version__ = "1.0.0"

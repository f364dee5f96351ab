"""Client-side sync core: feed paging, match detection and realtime conversations."""

__version__ = "0.1.0"

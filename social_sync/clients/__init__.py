from .instagram_graph import InstagramGraphClient, next_cursor

__all__ = ["InstagramGraphClient", "next_cursor"]

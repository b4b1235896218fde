"""
Caching proxy modules.

Requests are classified (classifier) and served by one of the strategies
against the named caches in cache_manager; lifecycle prunes namespaces on
version change and side_channel applies out-of-band cache commands.
"""

__all__ = []

"""
Network retrieval for images.

- ImageFetcher: Fetch image URLs over HTTP as byte streams
- FetchResponse: An open response (status, headers, content type, body)
"""

from imgcache.retrieval.fetch import FetchResponse, ImageFetcher, parse_content_type

__all__ = [
    "FetchResponse",
    "ImageFetcher",
    "parse_content_type",
]

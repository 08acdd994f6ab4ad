"""
imgcache - transparent local caching of fetched images.

Fetched image bytes are stored in a content-addressable blob store keyed by a
hash of the canonical URL. Later references are served from short-lived
handles over the cached bytes instead of the network.
"""

__version__ = "0.1.0"

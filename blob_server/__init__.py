"""Content-addressed blob storage over HTTP.

Uploads are named by the BLAKE3 digest of their bytes, deduplicated, held to
a storage quota and served back by that name.
"""

__version__ = "0.1.0"

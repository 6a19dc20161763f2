"""
Search and recommendation service for the college media platform.

Keeps Elasticsearch indices of posts, users and hashtags in step with the
primary datastore and serves search, autocomplete, trending and
embedding-based recommendation queries over them.
"""

__version__ = "0.1.0"

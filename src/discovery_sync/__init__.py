"""Change-data-capture sync engine mirroring category changes into Elasticsearch."""

__version__ = "0.1.0"

"""Client wrappers for Kafka and Elasticsearch."""

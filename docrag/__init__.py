"""docrag -- document ingestion and semantic retrieval core."""

__version__ = "0.1.0"

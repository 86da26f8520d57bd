"""Ingestion pipeline: segmentation, metadata extraction, batched embedding."""

from docrag.services.ingestion.chunker import SegmentationMode, TextSegmenter, mode_for
from docrag.services.ingestion.embedding_batcher import BatchEmbeddingOutcome, EmbeddingBatcher
from docrag.services.ingestion.ingestion_service import IngestionService
from docrag.services.ingestion.metadata_extractor import MetadataExtractor

__all__ = [
    "BatchEmbeddingOutcome",
    "EmbeddingBatcher",
    "IngestionService",
    "MetadataExtractor",
    "SegmentationMode",
    "TextSegmenter",
    "mode_for",
]

"""Command-line tools for docrag.

- ``python -m docrag.cli`` (or ``python -m docrag.cli.ingest``) manages
  owner chunk sets: ingest documents and knowledge items, search, delete,
  backfill pending embeddings, and print owner statistics.
"""

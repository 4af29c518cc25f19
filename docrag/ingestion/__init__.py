"""Ingestion package for offline document processing.

Contains the chunking job (pipeline.py) and the local file ingestor
(ingest_file.py) that populate the database with chunked, embedded content.
"""

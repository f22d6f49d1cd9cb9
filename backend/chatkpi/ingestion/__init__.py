"""File ingestion for chatkpi.

Provides parsers for CSV and JSON uploads with a unified ParseResult
interface, format detection and normalization into canonical chat records,
and the upload pipeline that stores a validated batch.
"""

"""Carnival Sync - MySideline ingestion pipeline for Masters Rugby League carnivals."""

__version__ = "0.1.0"

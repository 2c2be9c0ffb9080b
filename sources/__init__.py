"""
Fetch collaborators for the proximity cache.

Each exposes `async fetch(FetchRequest) -> list of {id, lat, lon, ...}`:
- InMemorySource: fixed row set (demo data, tests)
- RestRecordSource: PostgREST / Supabase `items` table over HTTP
"""
from .memory_source import InMemorySource
from .rest_source import RestRecordSource

__all__ = ["InMemorySource", "RestRecordSource"]

"""
Culoca Proximity Cache Test Suite

Structure:
- unit/: Unit tests for individual components (geo, tile index, store, loader, governor, query, sources)
- integration/: HTTP API tests against an in-memory source
- helpers.py: scripted fetch collaborators shared by both
"""

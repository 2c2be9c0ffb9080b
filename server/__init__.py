"""
HTTP front for the proximity cache

- GET /nearest?lat&lon&count&pinned&radius -> nearest records for the session
- POST /load?lat&lon&radius, POST /clear
- GET /stats, /health
Sessions are picked by the X-Session-Id header; X-Viewer-Id scopes privacy.

Entry point:
    python -m server.app   (reads config/params.yaml)
"""

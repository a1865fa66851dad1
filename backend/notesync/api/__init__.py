"""NoteSync REST API package.

Sub-modules expose FastAPI routers:
- sync: pull / push / offline cache endpoints
- presence: best-effort WebSocket relay per note
"""

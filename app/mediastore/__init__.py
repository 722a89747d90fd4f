"""
Media store app for content-addressed uploads.

This app provides:
- FileHash model: one row per unique content hash, with a reference count
- Deterministic hash-bucketed storage paths for blobs and thumbnails
- Deduplicating ingest/release with atomic reference counting
- A Pillow derivative pipeline (resize, rotate, filters, watermark, encode)
- An in-process upload task tracker with progress broadcast
"""

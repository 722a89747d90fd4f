"""
Media store services.

Modules:
    paths: Content-addressed path layout (StoragePathResolver)
    blobs: Atomic blob writes and best-effort deletes
    hash_store: FileHash records and reference counting (HashStore)
    ingest: Deduplicating ingest/release (IngestService)
    events: In-process publish/subscribe (EventBus)
    task_tracker: Upload task registry and progress broadcast (TaskTracker)
    pipeline: Async upload driver (UploadPipeline)

Import from the submodules directly, e.g.:
    from mediastore.services.ingest import IngestService
"""

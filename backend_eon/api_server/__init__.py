"""
API server: FastAPI app for webhook ingestion and watcher status.
"""

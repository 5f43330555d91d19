"""
workspace_rag

Retrieval-augmented chat over a local workspace: an incremental ingestion
pipeline feeding a SQLite inverted index, and a streaming generation
orchestrator grounded in the retrieved context.
"""

__version__ = "1.0.0"

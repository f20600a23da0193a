"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Source text extraction
- Document chunking with overlap
- Embedding and generation backends
- The in-memory vector index and its snapshots
- Retrieval and prompt assembly
"""

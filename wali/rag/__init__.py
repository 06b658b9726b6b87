"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Document chunking with overlap
- Batched embedding and ingestion
- In-memory vector storage
- Semantic retrieval and answer generation
"""

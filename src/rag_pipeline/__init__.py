"""Video chat RAG pipeline.

This package chunks creator video transcripts, embeds and stores the chunks
in a tenant-scoped vector store, and ranks and assembles retrieved chunks
into cited, token-bounded context for answer generation.
"""

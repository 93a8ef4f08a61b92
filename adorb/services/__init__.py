"""
Services layer for adorb.

The RAG prediction engine lives in ``adorb.services.rag``.
"""

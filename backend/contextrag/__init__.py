"""
contextrag — document ingestion and context retrieval for a chat client.
"""

__version__ = "1.0.0"

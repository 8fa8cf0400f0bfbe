"""
boltindex - bounded-memory chunking, bolted embeddings, vector and
relationship indices for large text and source-code corpora.
"""

__version__ = "0.1.0"

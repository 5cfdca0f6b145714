"""CodeGraph CKG: code knowledge graph engine with hybrid symbolic + semantic retrieval."""

__version__ = "0.3.0"

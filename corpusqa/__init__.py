"""corpusqa: small single-node retrieval-augmented generation pipelines."""

__version__ = "0.1.0"

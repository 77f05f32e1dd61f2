"""Two-party threshold ECDSA engine: keygen, triples, presign and sign."""

__version__ = "0.1.0"

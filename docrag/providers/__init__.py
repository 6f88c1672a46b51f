"""Concrete adapters for the interfaces in :mod:`docrag.interfaces` and the document store."""

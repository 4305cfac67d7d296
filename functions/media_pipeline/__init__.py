"""
Image ingestion core: upload validation, rendition processing and the
per-entity image ledger.
"""

"""Blood-test ingestion and biomarker tracking backend."""

__version__ = "0.1.0"

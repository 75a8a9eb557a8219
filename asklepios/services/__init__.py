# Mark services as a package and expose the provider-facing modules for tests to monkeypatch.

from . import analysis_ai as analysis_ai  # noqa: F401
from . import text_extraction as text_extraction  # noqa: F401

__all__ = [
    "analysis_ai",
    "text_extraction",
]

"""Top-level package for mailsift.

This package turns collected newsletter mail into structured, deduplicated JSON
items through a rate-limited, context-bounded generation backend. The main
orchestration entry point is `MailPipeline`.
"""

from .pipeline import MailPipeline

__all__ = ["MailPipeline", "__version__"]

__version__ = "0.1.0"

"""
pdf_sanitizer drives external tools that strip active content, attachments
and metadata from PDFs while keeping their layout.

The orchestrator runs each file through a fixed sequence of stages and
records one outcome per file in the run report.
"""

__all__ = [
    "config",
    "discovery",
    "stages",
    "orchestrator",
    "report",
]

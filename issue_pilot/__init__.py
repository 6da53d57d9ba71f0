"""issue-pilot: workflow orchestration engine for issue-to-change automation."""

__version__ = "0.1.0"

"""Session/job core for the DocTools server.

This package keeps the FastAPI route handlers thin:
- session registry and the created -> processing -> complete/error lifecycle
- per-session blob storage with safe path handling
- background tool execution and download-triggered cleanup
- periodic sweeping of abandoned sessions

Security note:
Session ids are unguessable UUID4 capability tokens. Anyone holding one can
poll and download that session, so never log file-system paths or command
lines into client-visible messages.
"""

__version__ = "0.1.0"

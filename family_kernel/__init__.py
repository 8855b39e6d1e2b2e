"""
Family Hub Kernel

Shared infrastructure for the family finance engines:
- Structured JSON logging with pass-scoped context
- Typed exception hierarchy with machine-readable codes
- SQLAlchemy declarative base and engine/session management
- Injectable clock
"""

__version__ = "0.1.0"

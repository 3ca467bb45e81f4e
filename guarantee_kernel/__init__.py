"""
Guarantee Kernel

Persistence and domain core of the guarantee placement workflow engine:
- Quote requests, guarantee slots and refund requests
- Optimistic versioning on every workflow row
- Append-only slot transaction log
- Structured JSON logging and typed errors
"""

__version__ = "0.1.0"

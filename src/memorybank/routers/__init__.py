"""HTTP routers."""

from . import auth, backup, health, memory

__all__ = [
    "auth",
    "backup",
    "health",
    "memory",
]

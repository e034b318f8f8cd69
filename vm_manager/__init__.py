"""vm-manager package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "descriptor",
    "dispatcher",
    "exceptions",
    "gateway",
    "lifecycle",
    "models",
    "server",
    "storage",
    "tools",
    "utils",
]

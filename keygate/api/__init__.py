from . import keys, status

__all__ = ["keys", "status"]

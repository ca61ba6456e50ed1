from foreman.state.locks import file_lock
from foreman.state.store import JsonStateStore

__all__ = ["JsonStateStore", "file_lock"]

from .store import JsonTimestampStore, PersistedState, TimestampStore

__all__ = ["JsonTimestampStore", "PersistedState", "TimestampStore"]

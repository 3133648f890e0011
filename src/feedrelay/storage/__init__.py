from feedrelay.storage.storage import Storage, build_storage

__all__ = ["Storage", "build_storage"]

from .r2 import R2Config, R2ObjectStorage, StorageError, load_r2_config

__all__ = ["R2Config", "R2ObjectStorage", "StorageError", "load_r2_config"]

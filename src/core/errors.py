class BundleNotFoundError(LookupError):
    def __init__(self, bundle_id: str):
        super().__init__(f"Bundle not found: {bundle_id}")
        self.bundle_id = bundle_id


class LocalStoreQuotaExceededError(Exception):
    """Raised when a write would push the local store over its capacity."""

    def __init__(self, key: str, required: int, capacity: int):
        super().__init__(f"Local store quota exceeded writing {key}: {required} > {capacity} bytes")
        self.key = key
        self.required = required
        self.capacity = capacity

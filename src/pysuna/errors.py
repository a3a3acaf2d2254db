from __future__ import annotations


class PysunaError(RuntimeError):
    pass


class ConfigError(PysunaError):
    pass


class StoreError(PysunaError):
    """Persistence failure. `operation` names the store call that failed."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation}: {message}")


class ThreadNotFoundError(StoreError):
    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__("get_thread", f"Thread {thread_id} not found")


class ProviderError(PysunaError):
    pass

from pathlib import Path


class CompressionError(Exception):
    """Base class for failures surfaced to the caller of a compression request."""


class InputNotFoundError(CompressionError):
    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Input file not found: {path}")


class MetadataProbeError(CompressionError):
    def __init__(self, path: Path, message: str):
        self.path = path
        self.message = message
        super().__init__(f"Failed to read video metadata from {path}: {message}")


class UniqueNameExhaustedError(CompressionError):
    def __init__(self, directory: Path, stem: str):
        self.directory = directory
        self.stem = stem
        super().__init__(f"Could not find a free output name for '{stem}' in {directory}")


class CompressionFailedError(CompressionError):
    def __init__(self, attempts: int, last_error: str):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Compression failed after {attempts} attempts. Last error: {last_error}")

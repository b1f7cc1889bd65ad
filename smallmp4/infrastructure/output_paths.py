from pathlib import Path
from smallmp4.domain.errors import UniqueNameExhaustedError

OUTPUT_EXTENSION = ".mp4"
SUFFIXES = ("_compressed", "_small", "_squeezed", "_compact")
MAX_NUMBERED = 999


def default_output_path(input_path: Path) -> Path:
    """First free name next to the input; never returns an existing path."""
    stem = input_path.stem
    directory = input_path.parent

    for suffix in SUFFIXES:
        candidate = directory / f"{stem}{suffix}{OUTPUT_EXTENSION}"
        if not candidate.exists():
            return candidate

    for n in range(1, MAX_NUMBERED + 1):
        candidate = directory / f"{stem}_compressed_{n}{OUTPUT_EXTENSION}"
        if not candidate.exists():
            return candidate

    raise UniqueNameExhaustedError(directory, stem)

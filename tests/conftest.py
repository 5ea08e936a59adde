import logging
from collections.abc import Callable, Iterator
from pathlib import Path

import numpy as np
import pytest

from imagemath.imagemath_values import Image


@pytest.fixture(autouse=True)  # type: ignore[misc]
def restore_package_logger() -> Iterator[None]:
    # the CLI installs a stderr handler on the package logger
    logger = logging.getLogger("imagemath")
    handlers, level = logger.handlers[:], logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)


@pytest.fixture  # type: ignore[misc]
def images() -> dict[float, Image]:
    """Three 2x3 mono images, pixel values 100 + 10 * shift."""
    return {
        shift: Image(np.full((2, 3), 100.0 + 10.0 * shift, dtype=np.float32), {"shift": shift})
        for shift in (-1.0, 0.0, 1.0)
    }


@pytest.fixture  # type: ignore[misc]
def write(tmp_path: Path) -> Callable[[str, str], Path]:
    def write_file(name: str, text: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    return write_file

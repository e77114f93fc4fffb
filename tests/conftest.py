"""Shared fixtures for binview tests."""

from __future__ import annotations

import io

import numpy as np
import pytest

from binview import BinaryViewReader, BinaryViewWriter


@pytest.fixture
def stream() -> io.BytesIO:
    return io.BytesIO()


@pytest.fixture
def views(stream):
    """Writer and reader sharing one borrowed in-memory stream."""
    writer = BinaryViewWriter(stream)
    reader = BinaryViewReader(stream)
    yield writer, reader
    writer.close()
    reader.close()


@pytest.fixture
def random_bytes():
    """Factory for reproducible incompressible payloads."""

    def make(size: int, seed: int = 1) -> bytes:
        rng = np.random.default_rng(seed)
        return rng.integers(0, 256, size, dtype=np.uint8).tobytes()

    return make

"""Pytest fixtures shared across the test suite."""

import pytest

from helpers import jdk_builders


@pytest.fixture
def jdk():
    """Builders for java/lang/Object and java/io/Serializable."""
    return jdk_builders()

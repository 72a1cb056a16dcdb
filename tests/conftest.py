"""
Pytest configuration and fixtures
"""

import base64

import pytest
from unittest.mock import AsyncMock

from core.crypto import FieldCipher, generate_key
from fakes import FakeResult
from testdata import build_registry


@pytest.fixture
def registry():
    """Registry with every test entity type registered"""
    return build_registry()


@pytest.fixture
def mock_session():
    """AsyncSession double; set ``mock_session.execute.side_effect`` to script results"""
    session = AsyncMock()
    session.execute = AsyncMock(return_value=FakeResult())
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


@pytest.fixture
def cipher():
    return FieldCipher(generate_key())


@pytest.fixture
def encryption_key_b64():
    return base64.b64encode(generate_key()).decode("ascii")

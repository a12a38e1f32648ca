"""
Pytest configuration file for the block cipher verification harness tests.
"""

import pytest
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from cipherverify import SoftTokenSession, KnownAnswerVector


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "multipart: marks tests that drive the update/final path"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically."""
    for item in items:
        if "integration" in item.nodeid.lower():
            item.add_marker(pytest.mark.integration)

        if any(keyword in item.name.lower() for keyword in ["multipart", "streaming", "stride"]):
            item.add_marker(pytest.mark.multipart)

        if any(keyword in item.name.lower() for keyword in ["full_run", "catalog"]):
            item.add_marker(pytest.mark.slow)


@pytest.fixture
def token():
    """An open reference token; closed after the test."""
    with SoftTokenSession() as session:
        yield session


@pytest.fixture
def des_key():
    return bytes.fromhex("0123456789abcdef")


@pytest.fixture
def sample_vector(des_key):
    """The eight-byte '01234567' vector under DES-ECB, fed as 3 / null / 5."""
    from Crypto.Cipher import DES
    plaintext = b"01234567"
    return KnownAnswerVector(
        key=des_key,
        plaintext=plaintext,
        ciphertext=DES.new(des_key, DES.MODE_ECB).encrypt(plaintext),
        chunks=(3, -1, 5),
    )

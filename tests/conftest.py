#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""Pytest configuration for cgidispatch tests."""

import os
import sys
import tempfile

import pytest

# Add the project root to sys.path so test support modules can be imported
# as 'tests.module_name'
tests_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if tests_dir not in sys.path:
    sys.path.insert(0, tests_dir)


@pytest.fixture
def state_dir():
    """Short-lived state directory.

    Kept directly under the system temp dir: Unix socket paths are limited
    to about 100 bytes.
    """
    with tempfile.TemporaryDirectory(prefix="cgid-") as d:
        yield d


@pytest.fixture
def workers(state_dir):
    """Collects WorkerThread instances and stops them after the test."""
    started = []
    yield started
    for w in started:
        w.stop()

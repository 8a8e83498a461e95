"""Shared fixtures: one QCoreApplication per session and an event pump."""

from __future__ import annotations

import pytest
from PyQt6.QtCore import QCoreApplication


@pytest.fixture(scope="session")
def qapp():
    app = QCoreApplication.instance()
    if app is None:
        app = QCoreApplication([])
    yield app


@pytest.fixture
def pump(qapp):
    """Deliver queued signal emissions (line dispatch runs on the event loop)."""

    def _pump(rounds: int = 5):
        for _ in range(rounds):
            qapp.processEvents()

    return _pump

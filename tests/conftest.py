from __future__ import annotations

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture()
def settings(tmp_path, monkeypatch):
    # Keep a developer's .env out of the test run.
    monkeypatch.chdir(tmp_path)
    from config.settings import Settings

    return Settings(
        credential_strategy="local",
        offer_delay_seconds=0.01,
        in_call_delay_seconds=0.05,
        reconnect_delay_seconds=0.05,
        ice_servers=[],
    )

import os
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.pop("ASSET_STORE_SOURCE", None)
os.environ.pop("SERVICE_API_KEY", None)


@pytest.fixture()
def store(tmp_path):
    from asset_store import AssetStore

    return AssetStore(str(tmp_path / "assets.db"))

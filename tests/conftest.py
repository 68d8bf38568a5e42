import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from config import config
from fake_daemon import FakeDaemon


@pytest.fixture
def daemon():
    """A scripted daemon listening on a loopback port."""
    d = FakeDaemon()
    d.start()
    yield d
    d.close()


@pytest.fixture
def restore_config():
    """Undo changes tests make to the global config object."""
    saved = dict(vars(config))
    saved["keymap"] = dict(config.keymap)
    yield config
    vars(config).clear()
    vars(config).update(saved)

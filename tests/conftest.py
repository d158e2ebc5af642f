import pytest

from buildpatch.core.logging import configure_logging
from tests.fixtures.install import fast_settings


@pytest.fixture(scope="session", autouse=True)
def quiet_logging():
    """Only warnings and above during tests."""
    configure_logging(level="warning", fmt="console")


@pytest.fixture
def settings_fast():
    return fast_settings()


@pytest.fixture
def install_dir(tmp_path):
    d = tmp_path / "install"
    d.mkdir()
    return d


@pytest.fixture
def staging_dir(tmp_path):
    return tmp_path / "staging"

from typing import Generator

import pytest

from imbue.sshd_fixture.config.data_types import SshdFixtureConfig
from imbue.sshd_fixture.config.loader import load_config
from imbue.sshd_fixture.errors import NoBackendAvailableError
from imbue.sshd_fixture.handle import ServerHandle
from imbue.sshd_fixture.selector import acquire_server


@pytest.fixture(scope="session")
def sshd_fixture_config() -> SshdFixtureConfig:
    """Configuration used by sshd_server. Override this fixture to customize it."""
    return load_config()


@pytest.fixture(scope="session")
def sshd_server(sshd_fixture_config: SshdFixtureConfig) -> Generator[ServerHandle, None, None]:
    """A working SSH server for the whole test session.

    Tests requesting it are skipped when no backend can provide one.
    """
    try:
        handle = acquire_server(sshd_fixture_config)
    except NoBackendAvailableError as e:
        pytest.skip(str(e))
    with handle:
        yield handle

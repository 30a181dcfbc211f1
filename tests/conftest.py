import pytest

from poolsim import bootstrap


@pytest.fixture(scope="session", autouse=True)
def setup_poolsim_registry() -> None:
    """Register built-in backends once for the entire test session."""

    bootstrap()

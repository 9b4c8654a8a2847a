import warnings

import pytest


@pytest.fixture(autouse=True, scope="session")
def reduce_warnings_noise():
    """Silence third-party deprecation noise for the sandbox unit tests."""
    warnings.filterwarnings("ignore")

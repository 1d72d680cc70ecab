import sys
import pathlib

import pytest

# Modules live flat under backend/ and import each other by bare name.
_BACKEND = pathlib.Path(__file__).resolve().parent.parent / "backend"
if str(_BACKEND) not in sys.path:
    sys.path.insert(0, str(_BACKEND))

from diag import close_diagnostic_sink, open_diagnostic_sink
from settings import ProbeSettings


@pytest.fixture
def settings():
    return ProbeSettings(workers=4)


@pytest.fixture
def diag_file(tmp_path):
    path = tmp_path / "diag.log"
    logger = open_diagnostic_sink(str(path))
    yield logger, path
    close_diagnostic_sink(logger)


@pytest.fixture
def diag(diag_file):
    return diag_file[0]

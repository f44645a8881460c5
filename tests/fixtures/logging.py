import logging
from typing import Generator

import pytest
from pytest import LogCaptureFixture


class NoErrors:
    """
    Assert that a test produced no ERROR records from mayamdai. Stale and
    malformed frames must only ever be logged below ERROR.
    """

    caplog: LogCaptureFixture

    def __init__(self, caplog: LogCaptureFixture):
        self.caplog = caplog
        self._allow_errors = False

    def allow_errors(self) -> None:
        self._allow_errors = True

    def errors(self) -> list[logging.LogRecord]:
        return [
            record
            for when in ("setup", "call")
            for record in self.caplog.get_records(when)
            if record.levelno >= logging.ERROR and record.name.startswith("mayamdai")
        ]

    def __call__(self) -> None:
        if self._allow_errors:
            return
        assert self.errors() == []


@pytest.fixture
def no_logging_error(caplog: LogCaptureFixture) -> Generator[NoErrors, None, None]:
    with caplog.at_level(logging.DEBUG, logger="mayamdai"):
        yield NoErrors(caplog)

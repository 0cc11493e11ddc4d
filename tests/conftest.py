import pytest

from yarni import ErrorHandler


@pytest.fixture
def error_sink():
    """A quiet ErrorHandler together with the list of errors it received."""
    handler = ErrorHandler(log_to_console=False)
    captured = []
    handler.register_handler(captured.append)
    return handler, captured

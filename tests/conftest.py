import pytest

from scopefx import Runtime


@pytest.fixture
def errors():
    """Exceptions routed to the runtime's exception handler."""
    return []


@pytest.fixture
def runtime(errors):
    return Runtime(exception_handler=lambda exc, cause=None: errors.append(exc))


@pytest.fixture
def root(runtime):
    return runtime.root_scope

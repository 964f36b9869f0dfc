"""Action boundary for HTTP routes.

Learn: Services raise the taxonomy in switchboard.errors and nothing else
user-visible. Routes wrap their service calls in `service_errors()`, which
turns a taxonomy error into an HTTPException with the error's status and
`{"code", "message"}` detail, and a raw store failure into a 503.
"""

from contextlib import contextmanager

import structlog
from fastapi import HTTPException

from switchboard.errors import SwitchboardError, TransientIOFailure
from switchboard.services.dashboard import IO_ERRORS

logger = structlog.get_logger()


@contextmanager
def service_errors():
    try:
        yield
    except SwitchboardError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    except IO_ERRORS as e:
        logger.warning("api.io_failure", error=str(e))
        failure = TransientIOFailure("The server could not complete that. Please try again.")
        raise HTTPException(status_code=failure.status_code, detail=failure.to_dict())

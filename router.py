# router.py
import logging
import re

from auth import Unauthorized
from engine import Services, build_services
from models import Request, Response, ResultKind

logger = logging.getLogger("machinectl.router")

MACHINE_PATH = re.compile(r"^/machine/([a-zA-Z0-9-]+)$")
START_PATH = re.compile(r"^/machine/([a-zA-Z0-9-]+)/start$")
RELEASE_PATH = re.compile(r"^/machine/([a-zA-Z0-9-]+)/release$")


class Router:
    """
    Routes an already-decoded request to the engines.
    The token check runs first and fails closed: nothing is dispatched
    and no state is read when it fails.
    """

    def __init__(self, services: Services):
        self.services = services

    def handle(self, request: Request) -> Response:
        try:
            self.services.validator.validate(request.token)
        except Unauthorized as e:
            logger.info("Rejected %s %s: %s", request.method, request.path, e)
            return Response(ResultKind.UNAUTHORIZED, None, str(e))

        method = request.method.upper()
        body = request.body if isinstance(request.body, dict) else {}

        if method == "POST" and request.path == "/machine/request":
            location_id = body.get("locationId")
            job_id = body.get("jobId")
            if not (isinstance(location_id, str) and location_id and isinstance(job_id, str) and job_id):
                logger.info("Rejected reserve with invalid body: %r", request.body)
                return Response(ResultKind.UNROUTABLE, None,
                                "Invalid request body: locationId and jobId must be non-empty strings")
            return self.services.reservations.reserve(location_id, job_id)

        match = MACHINE_PATH.match(request.path)
        if method == "GET" and match:
            return self.services.reads.get_machine(match.group(1))

        match = START_PATH.match(request.path)
        if method == "POST" and match:
            return self.services.lifecycle.start(match.group(1))

        match = RELEASE_PATH.match(request.path)
        if method == "POST" and match:
            return self.services.lifecycle.release(match.group(1), body.get("jobId"))

        return Response(ResultKind.UNROUTABLE, None, f"No route for {request.method} {request.path}")


def build_router(storage, gateway=None) -> Router:
    return Router(build_services(storage, gateway=gateway))

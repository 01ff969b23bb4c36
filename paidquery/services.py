import logging
from typing import Callable

from pydantic import ValidationError as PydanticValidationError

from . import metrics
from .errors import CapacityError, InternalError, NotFound, ValidationError
from .models import Job, JobState
from .schemas import JobView, ReportRequest
from .store import JobStore
from .supervisor import WatcherSupervisor
from .tokens import generate_secret
from .watcher import PaymentTerms

logger = logging.getLogger(__name__)

MAX_SECRET_ATTEMPTS = 5

STATUS_MESSAGES = {
    JobState.PENDING: "Waiting for payment verification",
    JobState.VERIFIED: "Payment verified, executing query",
    JobState.COMPLETED: "Report ready",
}


def validation_error_from(exc) -> ValidationError:
    """Flatten a pydantic or FastAPI validation error into field messages."""
    fields = {}
    for err in exc.errors():
        name = ".".join(str(p) for p in err["loc"] if p != "body") or "body"
        msg = err["msg"]
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        fields[name] = msg
    summary = "; ".join(f"{k}: {v}" for k, v in fields.items())
    return ValidationError(f"Invalid request: {summary}", fields)


class RequestService:
    def __init__(
        self,
        store: JobStore,
        supervisor: WatcherSupervisor,
        terms: PaymentTerms,
        secret_factory: Callable[[], str] = generate_secret,
    ):
        self.store = store
        self.supervisor = supervisor
        self.terms = terms
        self.secret_factory = secret_factory

    @staticmethod
    def validate(domain, date, payor_address) -> ReportRequest:
        try:
            return ReportRequest.model_validate(
                {"domain": domain, "date": date, "payorAddress": payor_address}
            )
        except PydanticValidationError as exc:
            raise validation_error_from(exc) from None

    async def create_job(self, domain: str, date: str, payor_address: str) -> str:
        """Register a pending job and start watching for its payment.

        Returns the job secret without waiting on the watcher.
        """
        req = self.validate(domain, date, payor_address)
        if not self.supervisor.has_capacity():
            raise CapacityError("Too many pending requests, try again later")

        for _ in range(MAX_SECRET_ATTEMPTS):
            job = Job(
                secret=self.secret_factory(),
                domain=req.domain,
                date=req.date,
                payor_address=req.payor_address,
            )
            if await self.store.create(job):
                break
            logger.warning("requests: secret collision, regenerating")
        else:
            raise InternalError()

        self.supervisor.start(job)
        metrics.requests_created_total.inc()
        logger.info("requests: job %s created for %s on %s", job.secret[:8], job.domain, job.date)
        return job.secret

    def payment_instructions(self, secret: str) -> str:
        return (
            f"Payment required. Send {self.terms.min_amount}{self.terms.denom} to "
            f"{self.terms.payee} with memo {secret}."
        )


class StatusService:
    def __init__(self, store: JobStore):
        self.store = store

    async def get_status(self, secret: str) -> JobView:
        job = await self.store.get(secret)
        if job is None:
            raise NotFound(secret)
        # one snapshot, every field below comes from the same record
        view = JobView(secret=job.secret, status=job.state.value, message=STATUS_MESSAGES.get(job.state))
        if job.state == JobState.COMPLETED:
            view.result = job.result
            view.filename = job.filename
        elif job.state == JobState.FAILED:
            view.error = job.error_reason
        return view

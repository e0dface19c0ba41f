"""Record assembly — fetch fragments for a job and apply the completeness policy."""

import logging
from typing import Optional

import greenstalk

from log_processor.cache import FragmentStore
from log_processor.errors import IncompleteLogError
from log_processor.metrics import WorkerMetrics
from log_processor.models import LogFragments
from log_processor.retry import RetryManager

logger = logging.getLogger(__name__)


def check_completeness(fragments: LogFragments) -> Optional[str]:
    """Name the rule under which the available fragments are final, or None.

    Fragments come from independently scheduled stages over UDP, so a
    missing one is either late or will never be written. These rules
    cover the cases where it will never be written.
    """
    edge, policy, backend = fragments.edge, fragments.policy, fragments.backend
    if edge is None:
        return None

    status = edge.get("res_status")

    if policy is not None and backend is not None:
        return "complete"

    # Denied by the policy gateway: the backend was never called.
    if policy is not None and policy.get("denied_code"):
        return "policy_denied"

    # Edge rate limit: the request never reached the gateway.
    if policy is None and backend is None and status == 429:
        return "edge_rate_limited"

    # Gateway unreachable.
    if policy is None and backend is None and status == 502:
        return "gateway_unavailable"

    # Client hung up before the response.
    if status == 499:
        return "client_closed"

    # Served from the HTTP cache, no backend call expected.
    if policy is not None and backend is None and edge.get("res_x_cache") == "HIT":
        return "cache_hit"

    return None


class RecordAssembler:
    """Fetches a job's fragments and decides whether they are ready to clean."""

    def __init__(
        self,
        store: FragmentStore,
        retry: RetryManager,
        accept_attempts: int = 3,
        metrics: Optional[WorkerMetrics] = None,
    ):
        self._store = store
        self._retry = retry
        self._accept_attempts = accept_attempts
        self._metrics = metrics or WorkerMetrics()

    def assemble(self, job: greenstalk.Job, log_id: str) -> LogFragments:
        """Return the accepted fragments or raise IncompleteLogError."""
        fragments = self._store.fetch(log_id)

        rule = check_completeness(fragments)
        if rule is not None:
            logger.debug("Accepted log=%s job=%s under rule %s", log_id, job.id, rule)
            return fragments

        attempts = self._retry.attempts(job, log_id)
        if (
            attempts is not None
            and attempts >= self._accept_attempts
            and fragments.edge is not None
        ):
            self._log_incomplete_accept(job, log_id, fragments, attempts)
            self._metrics.increment("jobs_accepted_incomplete")
            return fragments

        raise IncompleteLogError("Incomplete log data")

    @staticmethod
    def _log_incomplete_accept(job, log_id, fragments, attempts):
        # Usually the HTTP cache collapsing concurrent identical requests
        # into a single backend call; only one of them gets backend data.
        status = fragments.response_status
        level = logging.INFO
        message = "Log data incomplete - logging anyway"
        if isinstance(status, int) and status >= 500:
            level = logging.ERROR
            message += (
                " - response status indicates an internal server error,"
                " are all pipeline stages running?"
            )
        logger.log(
            level,
            "%s (log=%s job=%s attempts=%d status=%s %s)",
            message, log_id, job.id, attempts, status, fragments.presence(),
        )

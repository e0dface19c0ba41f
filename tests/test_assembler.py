"""Tests for log_processor/assembler.py — the completeness policy."""

import logging

import pytest

from log_processor.assembler import RecordAssembler, check_completeness
from log_processor.errors import IncompleteLogError
from log_processor.models import LogFragments
from log_processor.retry import RetryManager


EDGE = {"res_status": 200, "req_host": "a.example"}
POLICY = {"api_key": "k1"}
BACKEND = {"res_time_backend": 0.1}


def _edge(**overrides) -> dict:
    edge = dict(EDGE)
    edge.update(overrides)
    return edge


class TestCheckCompleteness:
    """Decision table for the accept-without-retry rules."""

    @pytest.mark.parametrize(
        "fragments, expected",
        [
            (LogFragments(edge=EDGE, policy=POLICY, backend=BACKEND), "complete"),
            (
                LogFragments(edge=_edge(res_status=403), policy={"denied_code": "api_key_missing"}),
                "policy_denied",
            ),
            (LogFragments(edge=_edge(res_status=429)), "edge_rate_limited"),
            (LogFragments(edge=_edge(res_status=502)), "gateway_unavailable"),
            (LogFragments(edge=_edge(res_status=499)), "client_closed"),
            (LogFragments(edge=_edge(res_status=499), policy=POLICY), "client_closed"),
            (LogFragments(edge=_edge(res_status=499), backend=BACKEND), "client_closed"),
            (LogFragments(edge=_edge(res_x_cache="HIT"), policy=POLICY), "cache_hit"),
        ],
    )
    def test_accepted(self, fragments, expected):
        assert check_completeness(fragments) == expected

    @pytest.mark.parametrize(
        "fragments",
        [
            LogFragments(),
            LogFragments(policy=POLICY, backend=BACKEND),
            LogFragments(edge=EDGE),
            LogFragments(edge=EDGE, policy=POLICY),
            LogFragments(edge=EDGE, backend=BACKEND),
            # Rate-limit and bad-gateway exemptions need the edge fragment alone.
            LogFragments(edge=_edge(res_status=429), policy=POLICY),
            LogFragments(edge=_edge(res_status=502), backend=BACKEND),
            # A falsy denied code is not a denial.
            LogFragments(edge=EDGE, policy={"denied_code": ""}),
            # Cache hits still need the policy fragment.
            LogFragments(edge=_edge(res_x_cache="HIT")),
            LogFragments(edge=_edge(res_x_cache="MISS"), policy=POLICY),
        ],
    )
    def test_rejected(self, fragments):
        assert check_completeness(fragments) is None


class TestRecordAssembler:
    """Retry-count driven acceptance of incomplete fragments."""

    def _assembler(self, store, broker):
        return RecordAssembler(store, RetryManager(broker), accept_attempts=3)

    def test_complete_fragments_returned(self, store, broker):
        store.fragments["abc"] = LogFragments(edge=EDGE, policy=POLICY, backend=BACKEND)
        job = broker.put("abc")

        fragments = self._assembler(store, broker).assemble(job, "abc")

        assert fragments.backend == BACKEND

    def test_incomplete_rejected_before_three_attempts(self, store, broker):
        store.fragments["abc"] = LogFragments(edge=EDGE)
        job = broker.put("abc", releases=2)

        with pytest.raises(IncompleteLogError):
            self._assembler(store, broker).assemble(job, "abc")

    def test_incomplete_accepted_after_three_attempts(self, store, broker, caplog):
        store.fragments["abc"] = LogFragments(edge=EDGE, policy=POLICY)
        job = broker.put("abc", releases=3)

        with caplog.at_level(logging.INFO, logger="log_processor.assembler"):
            fragments = self._assembler(store, broker).assemble(job, "abc")

        assert fragments.edge == EDGE
        assert any(
            r.levelno == logging.INFO and "logging anyway" in r.getMessage()
            for r in caplog.records
        )

    def test_server_error_escalates_log_level(self, store, broker, caplog):
        store.fragments["abc"] = LogFragments(edge=_edge(res_status=503))
        job = broker.put("abc", releases=5)

        with caplog.at_level(logging.INFO, logger="log_processor.assembler"):
            self._assembler(store, broker).assemble(job, "abc")

        assert any(r.levelno == logging.ERROR for r in caplog.records)

    def test_missing_edge_never_accepted(self, store, broker):
        store.fragments["abc"] = LogFragments(policy=POLICY, backend=BACKEND)
        job = broker.put("abc", releases=9)

        with pytest.raises(IncompleteLogError):
            self._assembler(store, broker).assemble(job, "abc")

    def test_expired_key_is_incomplete(self, store, broker):
        job = broker.put("gone", releases=4)

        with pytest.raises(IncompleteLogError):
            self._assembler(store, broker).assemble(job, "gone")

    def test_unavailable_stats_do_not_accept(self, store, broker):
        store.fragments["abc"] = LogFragments(edge=EDGE)
        job = broker.put("abc", releases=5)
        broker.fail_stats = True

        with pytest.raises(IncompleteLogError):
            self._assembler(store, broker).assemble(job, "abc")

    def test_exempt_rule_ignores_attempts(self, store, broker):
        store.fragments["abc"] = LogFragments(edge=_edge(res_status=429))
        job = broker.put("abc", releases=0)
        broker.fail_stats = True

        fragments = self._assembler(store, broker).assemble(job, "abc")

        assert fragments.response_status == 429

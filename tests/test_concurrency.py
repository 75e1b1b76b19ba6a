"""
Concurrency tests: optimistic locking, statement transactions and retries.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, wait
from decimal import Decimal

import pytest

from statement_recon.errors import (
    ConcurrentModificationError,
    ReconciliationError,
    ValidationError,
)
from statement_recon.models import LineStatus, Match, MatchStatus, StatementStatus


def run_concurrently(*calls):
    """Start every call behind a barrier; collect results or errors."""
    barrier = threading.Barrier(len(calls))

    def _invoke(call):
        barrier.wait()
        try:
            return call(), None
        except ReconciliationError as e:
            return None, e

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(_invoke, calls))


class TestOptimisticLocking:

    def test_stale_version_is_rejected(self, service, make_statement):
        _, (line,) = make_statement([{"amount": "10.00"}])
        service.store.compare_and_set_line(line.id, line.version, line.status, LineStatus.DISPUTED)

        with pytest.raises(ConcurrentModificationError) as exc_info:
            service.store.compare_and_set_line(line.id, line.version, line.status, LineStatus.MATCHED)

        assert exc_info.value.retryable
        assert exc_info.value.details["current_version"] == line.version + 1
        assert service.get_line(line.id).status == LineStatus.DISPUTED


class TestRaces:

    def test_manual_matches_race_for_one_line(self, service, make_statement, add_record):
        for _ in range(4):
            add_record(None, "10.00")
        _, (line,) = make_statement([{"amount": "10.00"}])

        outcomes = run_concurrently(*[
            (lambda rid=f"rec-{n}": service.create_manual_match(line.id, [rid], "alice"))
            for n in range(1, 5)
        ])

        winners = [m for m, err in outcomes if err is None]
        assert len(winners) == 1
        assert all(err.code == "ALREADY_MATCHED" for m, err in outcomes if err is not None)
        confirmed = service.store.find_matches(line_id=line.id, statuses=[MatchStatus.CONFIRMED])
        assert [m.id for m in confirmed] == [winners[0].id]

    def test_competing_suggestions_confirm_once(self, service, make_statement, add_record):
        add_record(None, "10.00")
        add_record(None, "10.00")
        statement, (line,) = make_statement([{"amount": "10.00"}])
        suggestions = [
            service.store.add_match(Match(
                statement_id=statement.id,
                line_ids=[line.id],
                record_ids=[record_id],
                confidence=0.7,
            ))
            for record_id in ("rec-1", "rec-2")
        ]

        outcomes = run_concurrently(*[
            (lambda mid=s.id: service.confirm_match(mid, "alice")) for s in suggestions
        ])

        assert sum(1 for _, err in outcomes if err is None) == 1
        statuses = sorted(service.store.get_match(s.id).status.value for s in suggestions)
        assert statuses == ["confirmed", "rejected"]
        assert service.get_line(line.id).status == LineStatus.MATCHED

    def test_sign_off_races_a_rejection(self, service, make_statement, add_record):
        add_record("INV-1", "10.00")
        statement, (line,) = make_statement([{"document_number": "INV-1", "amount": "10.00"}])
        service.recompute(statement.id)
        (match,) = service.store.find_matches(line_id=line.id)

        (signed, sign_error), (rejected, reject_error) = run_concurrently(
            lambda: service.sign_off(statement.id, "controller"),
            lambda: service.reject_match(match.id, "wrong invoice", "alice", "amount_mismatch"),
        )

        assert (sign_error is None) != (reject_error is None)
        if sign_error is None:
            assert reject_error.code == "STATEMENT_LOCKED"
            assert service.get_line(line.id).status == LineStatus.MATCHED
        else:
            assert sign_error.code == "VARIANCE_NOT_ZERO"
            assert service.get_line(line.id).status == LineStatus.DISPUTED

    def test_sign_off_waits_for_ingest(self, service, make_statement, add_record, monkeypatch):
        add_record("INV-1", "10.00")
        statement, _ = make_statement([{"document_number": "INV-1", "amount": "10.00"}])
        service.recompute(statement.id)
        original = service.store.add_lines
        pool = ThreadPoolExecutor(max_workers=1)
        pending = []

        def add_lines_with_sign_off(lines):
            future = pool.submit(service.sign_off, statement.id, "controller")
            pending.append(future)
            done, _ = wait([future], timeout=0.2)
            assert not done
            return original(lines)

        monkeypatch.setattr(service.store, "add_lines", add_lines_with_sign_off)

        try:
            (late,) = service.ingest_lines(statement.id, [{"amount": "999.00"}])
            with pytest.raises(ReconciliationError) as exc_info:
                pending[0].result(timeout=5)
        finally:
            pool.shutdown(wait=True)

        assert exc_info.value.code == "VARIANCE_NOT_ZERO"
        assert service.get_statement(statement.id).status == StatementStatus.OPEN
        assert service.get_line(late.id).amount == Decimal("999.00")
        assert service.compute_variance(statement.id).net_variance == Decimal("999.00")

    def test_ingest_after_sign_off_is_refused(self, service, make_statement, add_record):
        add_record("INV-1", "10.00")
        statement, _ = make_statement([{"document_number": "INV-1", "amount": "10.00"}])
        service.recompute(statement.id)
        service.sign_off(statement.id, "controller")

        with pytest.raises(ReconciliationError) as exc_info:
            service.ingest_lines(statement.id, [{"amount": "999.00"}])

        assert exc_info.value.code == "STATEMENT_LOCKED"
        assert service.compute_variance(statement.id).net_variance == Decimal("0.00")
        assert len(service.store.find_lines(statement.id)) == 1

    def test_variance_reads_do_not_wait_for_transactions(self, service, make_statement):
        statement, _ = make_statement([{"amount": "10.00"}])

        with service.store.transaction(statement.id):
            with ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(service.compute_variance, statement.id)
                breakdown = future.result(timeout=5)

        assert breakdown.outstanding_lines == 1


class TestRetries:

    def test_conflict_is_retried(self, service, make_statement, monkeypatch):
        _, (line,) = make_statement([{"amount": "10.00"}])
        original = service.state_machine.dispute_line
        calls = []

        def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise ConcurrentModificationError("line changed", {"id": line.id})
            return original(*args, **kwargs)

        monkeypatch.setattr(service.state_machine, "dispute_line", flaky)

        issue = service.dispute_line(line.id, "duplicate", "", "alice")

        assert len(calls) == 2
        assert issue.line_id == line.id

    def test_other_errors_are_not_retried(self, service, monkeypatch):
        calls = []

        def failing(*args, **kwargs):
            calls.append(args)
            raise ValidationError("bad input", field="match_id")

        monkeypatch.setattr(service.state_machine, "confirm_match", failing)

        with pytest.raises(ValidationError):
            service.confirm_match("m-1", "alice")
        assert len(calls) == 1

    def test_retries_are_bounded(self, service, monkeypatch):
        calls = []

        def always_conflicting(*args, **kwargs):
            calls.append(args)
            raise ConcurrentModificationError("still changing")

        monkeypatch.setattr(service.state_machine, "confirm_match", always_conflicting)

        with pytest.raises(ConcurrentModificationError):
            service.confirm_match("m-1", "alice")
        assert len(calls) == service.settings.retry_attempts

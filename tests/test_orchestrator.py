"""
Tests for the matching orchestrator: recompute, manual matches, rejections.
"""

import pytest
from decimal import Decimal

from statement_recon.config import Settings
from statement_recon.errors import (
    AlreadyMatchedError,
    NotFoundError,
    StatementLockedError,
    ValidationError,
    VarianceNotZeroError,
)
from statement_recon.models import (
    AuditAction,
    IssueStatus,
    IssueType,
    LedgerRecord,
    LineStatus,
    LineType,
    MatchStatus,
    MatchType,
    StatementStatus,
)
from statement_recon.reconciliation import MatchingCapabilities
from statement_recon.service import ReconciliationService
from statement_recon.store import InMemoryLedger


def snapshot(service, statement_id):
    """Comparable view of every match, issue and line of a statement."""
    store = service.store
    return (
        [
            (m.id, m.status, tuple(m.line_ids), tuple(m.record_ids), m.confidence, m.version)
            for m in store.find_matches(statement_id=statement_id)
        ],
        [(i.id, i.status, i.line_id, i.version) for i in store.find_issues(statement_id)],
        [(l.id, l.status, l.version) for l in store.find_lines(statement_id)],
    )


class TestRecomputeScenarios:
    """End-to-end recompute behaviour on small statements."""

    def test_exact_match_is_auto_confirmed(self, service, make_statement, add_record):
        add_record("INV-100", "500.00")
        statement, (line,) = make_statement([{"document_number": "INV-100", "amount": "500.00"}])

        result = service.recompute(statement.id)

        assert result.matches_created == 1
        assert result.auto_confirmed == 1
        assert result.lines_processed == 1

        (match,) = service.store.find_matches(statement_id=statement.id)
        assert match.status == MatchStatus.CONFIRMED
        assert match.match_type == MatchType.EXACT
        assert match.confidence == 1.0
        assert match.record_ids == ["rec-1"]

        assert service.get_line(line.id).status == LineStatus.MATCHED
        assert service.compute_variance(statement.id).net_variance == Decimal("0.00")
        assert service.get_statement(statement.id).status == StatementStatus.RECONCILED

    def test_amount_outside_tolerance_opens_issue(self, service, make_statement, add_record):
        add_record("INV-100", "495.00")
        statement, (line,) = make_statement([{"document_number": "INV-100", "amount": "500.00"}])

        result = service.recompute(statement.id)

        assert result.matches_created == 0
        assert result.issues_created == 1

        (issue,) = service.store.find_issues(statement.id)
        assert issue.issue_type == IssueType.MISSING_RECORD
        assert issue.status == IssueStatus.OPEN
        assert issue.line_id == line.id
        assert issue.details["hint"] == "amount_mismatch"
        assert issue.details["record_ids"] == ["rec-1"]

        assert service.get_line(line.id).status == LineStatus.EXTRACTED
        assert service.compute_variance(statement.id).net_variance == Decimal("500.00")

    def test_unmatched_line_blocks_full_sign_off(self, service, make_statement, add_record):
        add_record("INV-1", "300.00")
        add_record("INV-2", "200.00")
        statement, lines = make_statement([
            {"document_number": "INV-1", "amount": "300.00"},
            {"document_number": "INV-2", "amount": "200.00"},
            {"document_number": "INV-3", "amount": "1000.00"},
        ])

        result = service.recompute(statement.id)
        assert result.auto_confirmed == 2
        assert result.issues_created == 1
        assert result.lines_processed == 3

        with pytest.raises(VarianceNotZeroError) as exc_info:
            service.sign_off(statement.id, "controller")
        assert exc_info.value.details["net_variance"] == "1000.00"

    def test_rejected_exact_match_is_only_suggested_again(self, service, make_statement, add_record):
        add_record("INV-100", "500.00")
        statement, (line,) = make_statement([{"document_number": "INV-100", "amount": "500.00"}])
        service.recompute(statement.id)
        (confirmed,) = service.store.find_matches(statement_id=statement.id)

        rejected = service.reject_match(confirmed.id, "wrong invoice", "alice")

        assert rejected.status == MatchStatus.REJECTED
        assert rejected.rejected_by == "alice"
        assert rejected.rejection_reason == "wrong invoice"
        assert service.get_line(line.id).status == LineStatus.EXTRACTED
        assert service.compute_variance(statement.id).net_variance == Decimal("500.00")
        assert service.get_statement(statement.id).status == StatementStatus.OPEN

        result = service.recompute(statement.id)

        assert result.auto_confirmed == 0
        assert result.suggestions_created == 1
        (suggestion,) = service.store.find_matches(line_id=line.id, statuses=[MatchStatus.SUGGESTED])
        assert suggestion.record_ids == ["rec-1"]
        assert service.get_line(line.id).status == LineStatus.EXTRACTED

        service.confirm_match(suggestion.id, "alice")
        assert service.get_line(line.id).status == LineStatus.MATCHED


class TestIdempotence:

    @pytest.fixture
    def mixed_statement(self, make_statement, add_record):
        add_record("INV-1", "100.00")
        add_record("INV-2", "200.01")
        add_record("OTHER", "75.00")
        statement, lines = make_statement([
            {"document_number": "INV-1", "amount": "100.00"},
            {"document_number": "INV-2", "amount": "200.00"},
            {"document_number": "INV-3", "amount": "300.00"},
        ])
        return statement

    def test_second_recompute_changes_nothing(self, service, mixed_statement):
        first = service.recompute(mixed_statement.id)
        before = snapshot(service, mixed_statement.id)

        second = service.recompute(mixed_statement.id)

        assert first.auto_confirmed == 1
        assert first.suggestions_created == 1
        assert first.issues_created == 1
        assert second.matches_created == 0
        assert second.issues_created == 0
        assert snapshot(service, mixed_statement.id) == before

    def test_consumed_record_is_settled_in_the_same_run(self, service, make_statement, add_record, jan):
        add_record("INV-7", "100.00", jan(10))
        statement, (loose, exact) = make_statement([
            {"amount": "100.00", "date": "2024-01-10"},
            {"document_number": "INV-7", "amount": "100.00", "date": "2024-01-10"},
        ])

        service.recompute(statement.id)
        before = snapshot(service, statement.id)

        assert service.get_line(exact.id).status == LineStatus.MATCHED
        assert service.store.find_matches(line_id=loose.id, statuses=[MatchStatus.SUGGESTED]) == []
        assert len(service.store.find_issues(statement.id, line_id=loose.id, statuses=[IssueStatus.OPEN])) == 1

        second = service.recompute(statement.id)
        assert second.matches_created == 0
        assert snapshot(service, statement.id) == before

    def test_open_issue_is_reused(self, service, make_statement):
        statement, (line,) = make_statement([{"document_number": "INV-9", "amount": "10.00"}])
        issue = service.dispute_line(line.id, "duplicate", "Billed twice", "bob")

        result = service.recompute(statement.id)

        assert result.issues_created == 0
        assert [i.id for i in service.store.find_issues(statement.id)] == [issue.id]


class TestRecomputeBehaviour:

    def test_split_payment_is_suggested(self, service, make_statement, add_record):
        add_record(None, "300.00")
        add_record(None, "200.00")
        statement, (line,) = make_statement([{"amount": "500.00"}])

        result = service.recompute(statement.id)

        assert result.suggestions_created == 1
        (match,) = service.store.find_matches(line_id=line.id)
        assert match.match_type == MatchType.SPLIT
        assert match.status == MatchStatus.SUGGESTED
        assert sorted(match.record_ids) == ["rec-1", "rec-2"]
        assert match.confidence == pytest.approx(0.75)

    def test_auto_confirm_resolves_system_issue(self, service, make_statement, add_record):
        statement, (line,) = make_statement([{"document_number": "INV-5", "amount": "50.00"}])
        service.recompute(statement.id)
        (issue,) = service.store.find_issues(statement.id)

        add_record("INV-5", "50.00")
        service.recompute(statement.id)

        assert service.store.get_issue(issue.id).status == IssueStatus.RESOLVED
        assert service.get_line(line.id).status == LineStatus.MATCHED
        assert service.get_statement(statement.id).status == StatementStatus.RECONCILED

    def test_failing_line_does_not_stop_the_run(self, store, settings):
        class BrokenLedger(InMemoryLedger):
            def find_candidates(self, vendor_ref, filters=None):
                if filters is not None and filters.document_number == "BOOM":
                    raise ValidationError("ledger rejected the query")
                return super().find_candidates(vendor_ref, filters)

        ledger = BrokenLedger()
        ledger.add(LedgerRecord(id="rec-1", vendor_ref="VENDOR-1", document_number="INV-1", amount=Decimal("10.00")))
        service = ReconciliationService(store=store, ledger=ledger, settings=settings)
        statement = service.register_statement("VENDOR-1")
        bad, good = service.ingest_lines(statement.id, [
            {"document_number": "BOOM", "amount": "5.00"},
            {"document_number": "INV-1", "amount": "10.00"},
        ])

        result = service.recompute(statement.id)

        assert result.lines_failed == 1
        assert result.failures[0].line_id == bad.id
        assert result.failures[0].error_code == "VALIDATION_ERROR"
        assert service.get_line(good.id).status == LineStatus.MATCHED
        assert service.get_line(bad.id).status == LineStatus.EXTRACTED
        assert service.audit_trail(statement.id, action=AuditAction.RECOMPUTE_LINE_FAILED.value)

    def test_non_matchable_line_types_are_skipped(self, store, ledger, settings, add_record):
        add_record("PMT-1", "-50.00")
        service = ReconciliationService(
            store=store,
            ledger=ledger,
            settings=settings,
            capabilities=MatchingCapabilities(line_types=frozenset({LineType.INVOICE})),
        )
        statement = service.register_statement("VENDOR-1")
        (payment,) = service.ingest_lines(statement.id, [
            {"document_number": "PMT-1", "amount": "50.00", "line_type": "payment"},
        ])

        result = service.recompute(statement.id)

        assert result.lines_processed == 0
        assert result.lines_skipped == 1
        assert service.get_line(payment.id).status == LineStatus.EXTRACTED
        assert service.store.find_issues(statement.id) == []

    def test_capabilities_from_settings(self):
        settings = Settings(_env_file=None, matchable_line_types=["invoice", "credit_note"])
        capabilities = MatchingCapabilities.from_settings(settings)
        assert capabilities.line_types == frozenset({LineType.INVOICE, LineType.CREDIT_NOTE})

        with pytest.raises(ValidationError):
            MatchingCapabilities.from_settings(Settings(_env_file=None, matchable_line_types=["rebate"]))

    def test_exhausted_line_can_be_disputed(self, store, ledger):
        service = ReconciliationService(
            store=store, ledger=ledger, settings=Settings(_env_file=None, dispute_on_exhausted=True),
        )
        statement = service.register_statement("VENDOR-1")
        (line,) = service.ingest_lines(statement.id, [{"document_number": "X", "amount": "1.00"}])

        service.recompute(statement.id)

        assert service.get_line(line.id).status == LineStatus.DISPUTED
        assert len(service.store.find_issues(statement.id)) == 1

    def test_signed_off_statement_is_locked(self, service, make_statement, add_record):
        add_record("INV-1", "10.00")
        statement, _ = make_statement([{"document_number": "INV-1", "amount": "10.00"}])
        service.recompute(statement.id)
        service.sign_off(statement.id, "controller")

        with pytest.raises(StatementLockedError):
            service.recompute(statement.id)


class TestManualMatch:

    def test_manual_match_confirms_line(self, service, make_statement, add_record, jan):
        add_record("REF-1", "480.00", jan(3))
        add_record("REF-2", "20.00", jan(4))
        statement, (line,) = make_statement([{"document_number": "INV-100", "amount": "500.00", "date": "2024-01-05"}])

        match = service.create_manual_match(line.id, ["rec-1", "rec-2"], "alice")

        assert match.status == MatchStatus.CONFIRMED
        assert match.match_type == MatchType.MANUAL
        assert match.confidence == 1.0
        assert match.created_by == "alice"
        assert match.amount_delta == Decimal("0.00")
        assert match.date_delta_days == 2
        assert service.get_line(line.id).status == LineStatus.MATCHED

    def test_manual_match_supersedes_suggestions(self, service, make_statement, add_record):
        add_record(None, "300.00")
        add_record(None, "200.00")
        add_record("MANUAL", "500.00")
        statement, (line,) = make_statement([{"amount": "500.00", "document_number": "INV-1"}])
        service.recompute(statement.id)
        (suggestion,) = service.store.find_matches(line_id=line.id, statuses=[MatchStatus.SUGGESTED])

        service.create_manual_match(line.id, ["rec-3"], "alice")

        superseded = service.store.get_match(suggestion.id)
        assert superseded.status == MatchStatus.REJECTED
        assert superseded.rejection_reason == "superseded"

    def test_already_matched_line(self, service, make_statement, add_record):
        add_record("INV-1", "10.00")
        add_record("INV-1B", "10.00")
        statement, (line,) = make_statement([{"document_number": "INV-1", "amount": "10.00"}])
        service.recompute(statement.id)

        with pytest.raises(AlreadyMatchedError) as exc_info:
            service.create_manual_match(line.id, ["rec-2"], "alice")
        assert exc_info.value.details["line_id"] == line.id

    def test_record_already_used_by_another_line(self, service, make_statement, add_record):
        add_record("INV-1", "10.00")
        statement, (first, second) = make_statement([
            {"document_number": "INV-1", "amount": "10.00"},
            {"document_number": "INV-2", "amount": "10.00"},
        ])
        service.create_manual_match(first.id, ["rec-1"], "alice")

        with pytest.raises(AlreadyMatchedError):
            service.create_manual_match(second.id, ["rec-1"], "alice")

    def test_unknown_record(self, service, make_statement):
        statement, (line,) = make_statement([{"amount": "10.00"}])
        with pytest.raises(NotFoundError):
            service.create_manual_match(line.id, ["missing"], "alice")

    def test_cross_currency_record_rejected(self, service, make_statement, add_record):
        add_record("INV-1", "10.00", currency="EUR")
        statement, (line,) = make_statement([{"document_number": "INV-1", "amount": "10.00"}])
        with pytest.raises(ValidationError):
            service.create_manual_match(line.id, ["rec-1"], "alice")

    @pytest.mark.parametrize("record_ids", [[], ["rec-1", "rec-1"], [""]])
    def test_invalid_record_ids(self, service, make_statement, add_record, record_ids):
        add_record("INV-1", "10.00")
        statement, (line,) = make_statement([{"amount": "10.00"}])
        with pytest.raises(ValidationError):
            service.create_manual_match(line.id, record_ids, "alice")

    def test_actor_required(self, service, make_statement, add_record):
        add_record("INV-1", "10.00")
        statement, (line,) = make_statement([{"amount": "10.00"}])
        with pytest.raises(ValidationError):
            service.create_manual_match(line.id, ["rec-1"], " ")

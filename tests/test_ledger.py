"""
Test suite for ledger module

Tests the double-entry poster: balance validation, tenant isolation of
accounts, idempotent posting per source reference and atomicity of header
and lines.
CRITICAL: Validates that debits always equal credits for every posted entry.
"""

import pytest
import random
from decimal import Decimal

from lending_engine.audit import AuditEventType
from lending_engine.currency import Currency
from lending_engine.errors import ForeignAccountError, ImbalancedEntryError, UnknownAccountError
from lending_engine.ledger import (
    AccountType, LedgerPoster, LineInput, PostingStatus, REFERENCE_MANUAL
)


@pytest.fixture
def accounts(system, tenant):
    return system.chart.seed_default_accounts(tenant.id)


def entry_count(system):
    return system.storage.count(LedgerPoster.ENTRY_TABLE)


class TestChartOfAccounts:
    """Tenant-scoped chart"""

    def test_default_accounts(self, system, tenant, accounts):
        assert sorted(accounts) == ["1010", "1200", "2100"]
        assert accounts["2100"].account_type == AccountType.LIABILITY
        # Seeding again reuses the existing accounts
        assert system.chart.seed_default_accounts(tenant.id)["1010"].id == accounts["1010"].id
        assert [a.code for a in system.chart.list_accounts(tenant.id)] == ["1010", "1200", "2100"]

    def test_duplicate_code_rejected(self, system, tenant, accounts):
        with pytest.raises(ValueError, match="Account code 1010 already exists"):
            system.chart.create_account(tenant.id, "1010", "Another clearing", AccountType.ASSET)

    def test_same_code_in_other_tenant(self, system, tenant, accounts):
        other = system.tenant_manager.create_tenant("Beta Loans", "BETA")
        account = system.chart.create_account(other.id, "1010", "Clearing", AccountType.ASSET)
        assert system.chart.get_by_code(other.id, "1010").id == account.id
        assert system.chart.get_by_code(tenant.id, "1010").id == accounts["1010"].id

    def test_require_by_code(self, system, tenant, accounts):
        with pytest.raises(UnknownAccountError, match="Account 9999 not found"):
            system.chart.require_by_code(tenant.id, "9999")


class TestPostEntry:
    """Validation and posting of journal entries"""

    def test_balanced_manual_entry(self, system, tenant, accounts):
        posting = system.ledger.post_manual_entry(tenant.id, [
            LineInput(accounts["1010"].id, debit="150.00", description="Cash in"),
            LineInput(accounts["1200"].id, credit="100.00"),
            LineInput(accounts["2100"].id, credit="50.00"),
        ], reference="JV-001", description="Correction")

        assert posting.status == PostingStatus.WRITTEN
        assert posting.entry.reference_type == REFERENCE_MANUAL
        assert posting.entry.reference_id == "JV-001"
        assert posting.entry.total_debit.amount == Decimal('150.00')
        assert posting.entry.line_count == 3

        lines = system.ledger.get_lines(posting.entry.id)
        assert [l.line_number for l in lines] == [1, 2, 3]
        assert lines[0].is_debit and not lines[1].is_debit
        assert system.ledger.verify_entry(posting.entry.id)

        posted = system.audit_trail.get_events_for_entity("journal_entry", posting.entry.id)
        assert [e.event_type for e in posted] == [AuditEventType.JOURNAL_ENTRY_POSTED]

    def test_generated_manual_reference(self, system, tenant, accounts):
        posting = system.ledger.post_manual_entry(tenant.id, [
            LineInput(accounts["1010"].id, debit=10), LineInput(accounts["1200"].id, credit=10),
        ])
        assert posting.entry.reference_id.startswith("MANUAL-")
        assert posting.entry.description == "Manual Journal Entry"

    def test_same_source_posts_once(self, system, tenant, accounts):
        lines = [LineInput(accounts["1010"].id, debit=10), LineInput(accounts["1200"].id, credit=10)]
        first = system.ledger.post_entry(tenant.id, "payment", "evt-1", "Repayment", lines)
        second = system.ledger.post_entry(tenant.id, "payment", "evt-1", "Repayment", lines)

        assert second.status == PostingStatus.ALREADY_EXISTS
        assert second.entry.id == first.entry.id
        assert len(second.lines) == 2
        assert len(system.ledger.find_entries(tenant.id, reference_type="payment")) == 1

    def test_imbalanced_entry_rejected(self, system, tenant, accounts):
        with pytest.raises(ImbalancedEntryError, match="difference=0.50") as exc_info:
            system.ledger.post_manual_entry(tenant.id, [
                LineInput(accounts["1010"].id, debit="100.50"),
                LineInput(accounts["1200"].id, credit="100.00"),
            ])
        assert exc_info.value.code == "IMBALANCED_ENTRY"
        assert exc_info.value.imbalance == Decimal('0.50')
        assert entry_count(system) == 0

    def test_imbalance_within_tolerance_accepted(self, system, tenant, accounts):
        posting = system.ledger.post_manual_entry(tenant.id, [
            LineInput(accounts["1010"].id, debit="100.004"),
            LineInput(accounts["1200"].id, credit="100.00"),
        ])
        assert posting.status == PostingStatus.WRITTEN

    def test_balance_checked_on_rounded_amounts(self, system, tenant, accounts):
        """Lines are rounded to cents before the balance check, so what is stored balances"""
        with pytest.raises(ImbalancedEntryError) as exc_info:
            system.ledger.post_manual_entry(tenant.id, [
                LineInput(accounts["1010"].id, debit="100.005"),
                LineInput(accounts["1200"].id, credit="50.002"),
                LineInput(accounts["1200"].id, credit="50.002"),
            ])
        assert exc_info.value.imbalance == Decimal('0.01')
        assert entry_count(system) == 0

        posting = system.ledger.post_manual_entry(tenant.id, [
            LineInput(accounts["1010"].id, debit="100.004"),
            LineInput(accounts["1200"].id, credit="50.002"),
            LineInput(accounts["1200"].id, credit="50.002"),
        ])
        lines = system.ledger.get_lines(posting.entry.id)
        assert [l.debit_amount.amount + l.credit_amount.amount for l in lines] == [
            Decimal('100.00'), Decimal('50.00'), Decimal('50.00')
        ]
        assert posting.entry.total_debit == posting.entry.total_credit
        assert system.ledger.verify_entry(posting.entry.id)

    def test_balance_checked_in_whole_units(self, system, tenant, accounts):
        with pytest.raises(ImbalancedEntryError, match="difference=1"):
            system.ledger.post_manual_entry(tenant.id, [
                LineInput(accounts["1010"].id, debit="100.5"),
                LineInput(accounts["1200"].id, credit="50.25"),
                LineInput(accounts["1200"].id, credit="50.25"),
            ], currency=Currency.UGX)
        assert entry_count(system) == 0

    def test_randomized_imbalances_never_post(self, system, tenant, accounts):
        """Any entry whose sides differ by a cent or more is rejected"""
        rng = random.Random(42)
        for _ in range(50):
            debits = [Decimal(rng.randint(1, 100000)) / 100 for _ in range(rng.randint(1, 4))]
            total = sum(debits, Decimal('0'))
            skew = Decimal(rng.choice([-1, 1]) * rng.randint(1, 5000)) / 100
            if total + skew <= 0:
                continue
            lines = [LineInput(accounts["1010"].id, debit=d) for d in debits]
            lines.append(LineInput(accounts["1200"].id, credit=total + skew))

            with pytest.raises(ImbalancedEntryError) as exc_info:
                system.ledger.post_manual_entry(tenant.id, lines)
            assert exc_info.value.imbalance == -skew

        assert entry_count(system) == 0

    def test_randomized_balanced_entries_post(self, system, tenant, accounts):
        rng = random.Random(7)
        for n in range(20):
            credits = [Decimal(rng.randint(1, 100000)) / 100 for _ in range(rng.randint(1, 4))]
            lines = [LineInput(accounts["1010"].id, debit=sum(credits, Decimal('0')))]
            lines += [LineInput(accounts["1200"].id, credit=c) for c in credits]

            posting = system.ledger.post_manual_entry(tenant.id, lines, reference=f"JV-{n}")
            assert system.ledger.verify_entry(posting.entry.id)

        assert entry_count(system) == 20

    def test_needs_two_lines(self, system, tenant, accounts):
        with pytest.raises(ValueError, match="at least two lines"):
            system.ledger.post_manual_entry(tenant.id, [LineInput(accounts["1010"].id, debit=10)])

    def test_line_needs_exactly_one_side(self, system, tenant, accounts):
        with pytest.raises(ValueError, match="exactly one of debit or credit"):
            system.ledger.post_manual_entry(tenant.id, [
                LineInput(accounts["1010"].id, debit=10, credit=10),
                LineInput(accounts["1200"].id, credit=0),
            ])
        with pytest.raises(ValueError, match="exactly one of debit or credit"):
            system.ledger.post_manual_entry(tenant.id, [
                LineInput(accounts["1010"].id),
                LineInput(accounts["1200"].id, credit=10),
            ])

    def test_negative_amount_rejected(self, system, tenant, accounts):
        with pytest.raises(ValueError, match="cannot be negative"):
            system.ledger.post_manual_entry(tenant.id, [
                LineInput(accounts["1010"].id, debit="-10"),
                LineInput(accounts["1200"].id, credit="-10"),
            ])

    def test_foreign_account_rejected(self, system, tenant, accounts):
        other = system.tenant_manager.create_tenant("Beta Loans", "BETA")
        foreign = system.chart.create_account(other.id, "1200", "Loans Receivable", AccountType.ASSET)

        with pytest.raises(ForeignAccountError, match="does not belong to tenant"):
            system.ledger.post_manual_entry(tenant.id, [
                LineInput(accounts["1010"].id, debit=10),
                LineInput(foreign.id, credit=10),
            ])
        assert entry_count(system) == 0

    def test_unknown_account_rejected(self, system, tenant, accounts):
        with pytest.raises(UnknownAccountError):
            system.ledger.post_manual_entry(tenant.id, [
                LineInput(accounts["1010"].id, debit=10),
                LineInput("no-such-account", credit=10),
            ])

    def test_failed_line_write_leaves_no_header(self, system, tenant, accounts, monkeypatch):
        """A crash between header and lines rolls back the whole entry"""
        original = system.ledger._save_line
        calls = []

        def failing_save_line(line):
            calls.append(line.line_number)
            if len(calls) == 2:
                raise RuntimeError("disk full")
            original(line)

        monkeypatch.setattr(system.ledger, "_save_line", failing_save_line)
        lines = [LineInput(accounts["1010"].id, debit=10), LineInput(accounts["1200"].id, credit=10)]

        with pytest.raises(RuntimeError, match="disk full"):
            system.ledger.post_manual_entry(tenant.id, lines, reference="JV-CRASH")

        assert entry_count(system) == 0
        assert system.storage.count(LedgerPoster.LINE_TABLE) == 0
        assert system.audit_trail.get_events_by_type(AuditEventType.JOURNAL_ENTRY_POSTED) == []

        monkeypatch.setattr(system.ledger, "_save_line", original)
        retry = system.ledger.post_manual_entry(tenant.id, lines, reference="JV-CRASH")
        assert retry.status == PostingStatus.WRITTEN
        assert len(system.ledger.get_lines(retry.entry.id)) == 2

    def test_entry_currency(self, system, tenant, accounts):
        posting = system.ledger.post_manual_entry(tenant.id, [
            LineInput(accounts["1010"].id, debit=1000), LineInput(accounts["1200"].id, credit=1000),
        ], currency=Currency.UGX)
        assert posting.entry.total_debit.currency == Currency.UGX

    def test_verify_missing_entry(self, system):
        assert not system.ledger.verify_entry("missing")


class TestBulkImport:
    """Spreadsheet journal upload"""

    def rows(self, debit_code="1010", credit_code="1200"):
        return [
            {"Reference": "JV1", "Date": "2026-01-05", "Description": "Float top up",
             "AccountCode": debit_code, "Debit": "500.00", "Credit": ""},
            {"Reference": "JV1", "Date": "2026-01-05", "Description": "Float top up",
             "AccountCode": credit_code, "Debit": "", "Credit": "500.00"},
            {"Reference": "JV2", "Date": "2026-01-06", "Description": "Typo",
             "AccountCode": "1010", "Debit": "110.00", "Credit": ""},
            {"Reference": "JV2", "Date": "2026-01-06", "Description": "Typo",
             "AccountCode": "2100", "Debit": "", "Credit": "100.00"},
        ]

    def test_groups_by_reference(self, system, tenant, accounts):
        result = system.ledger.import_bulk_lines(tenant.id, self.rows())

        assert result.posted == ["JV1"]
        assert result.count == 1
        assert result.skipped == [{"reference": "JV2", "reason": "IMBALANCED_ENTRY", "imbalance": "10.00"}]

        entry = system.ledger.find_entries(tenant.id, reference_type="bulk_upload", reference_id="JV1")[0]
        assert entry.description == "Float top up"
        assert entry.entry_date.date().isoformat() == "2026-01-05"
        assert entry.line_count == 2

    def test_reupload_reports_duplicates(self, system, tenant, accounts):
        system.ledger.import_bulk_lines(tenant.id, self.rows())
        result = system.ledger.import_bulk_lines(tenant.id, self.rows())

        assert result.posted == []
        assert result.duplicates == ["JV1"]
        assert len(system.ledger.find_entries(tenant.id)) == 1

    def test_unknown_code_aborts_batch(self, system, tenant, accounts):
        with pytest.raises(UnknownAccountError, match="Account 4040 not found"):
            system.ledger.import_bulk_lines(tenant.id, self.rows(credit_code="4040"))
        assert entry_count(system) == 0

    def test_rows_without_reference_share_one_entry(self, system, tenant, accounts):
        rows = [
            {"account_code": "1010", "debit": 25},
            {"account_code": "1200", "credit": 25},
        ]
        result = system.ledger.import_bulk_lines(tenant.id, rows)
        assert len(result.posted) == 1
        assert result.posted[0].startswith("BULK-")

"""Generation coordinator: idempotency, isolation and termination."""

from datetime import date
from decimal import Decimal

import pytest

from bizdesk.exceptions import (
    PersistenceError,
    RecurrenceValidationError,
    RuleNotFoundError,
    StoreUnavailableError,
)
from bizdesk.services.generation import GenerationCoordinator, OutcomeKind
from conftest import at


@pytest.fixture
def coordinator(rule_store, instance_store):
    return GenerationCoordinator(rule_store, instance_store, recent_limit=5)


def add_rules(rule_store, *rules):
    for rule in rules:
        rule_store.rules[rule.id] = rule
    return rules


async def test_month_end_rule_generates_and_clamps(coordinator, rule_store, instance_store, make_rule):
    (rule,) = add_rules(
        rule_store,
        make_rule(frequency="monthly", day_of_month=31, interval=1, next_due_at=at(2024, 1, 31)),
    )
    now = at(2024, 2, 1)

    report = await coordinator.run(now)

    assert report.created_count == 1
    assert report.errors == []
    instance = report.created[0]
    assert instance.due_date == date(2024, 1, 31)
    assert instance.rule_id == rule.id
    assert instance.status == "pending"
    assert instance.title == rule.title
    assert instance.tags == ["reporting"]
    assert rule.next_due_at == at(2024, 2, 29)
    assert rule.last_generated_at == now


async def test_rerun_with_same_now_creates_nothing(coordinator, rule_store, instance_store, make_rule):
    add_rules(rule_store, make_rule(frequency="daily", next_due_at=at(2024, 2, 1)))
    now = at(2024, 2, 1, 12)

    first = await coordinator.run(now)
    second = await coordinator.run(now)

    assert first.created_count == 1
    assert second.created_count == 0
    assert second.outcomes == []
    assert second.errors == []
    assert len(instance_store.instances) == 1


async def test_existing_instance_is_skipped_and_rule_advances(
    coordinator, rule_store, instance_store, make_rule
):
    (rule,) = add_rules(rule_store, make_rule(frequency="daily", next_due_at=at(2024, 2, 1)))
    instance_store.add_existing(rule.id, date(2024, 2, 1))

    report = await coordinator.run(at(2024, 2, 1, 8))

    assert report.created_count == 0
    assert report.errors == []
    assert report.outcomes[0].kind is OutcomeKind.ALREADY_GENERATED
    assert rule.next_due_at == at(2024, 2, 2)


async def test_lost_uniqueness_race_is_benign(coordinator, rule_store, instance_store, make_rule):
    (rule,) = add_rules(rule_store, make_rule(frequency="weekly", next_due_at=at(2024, 2, 1)))
    # Another batch inserted the row after our exists() check
    instance_store.add_existing(rule.id, date(2024, 2, 1), hidden=True)

    report = await coordinator.run(at(2024, 2, 1, 8))

    assert report.errors == []
    assert report.skipped_count == 1
    assert rule.next_due_at == at(2024, 2, 8)


async def test_one_failing_rule_does_not_stop_the_others(
    coordinator, rule_store, instance_store, make_rule
):
    first, second, third = add_rules(
        rule_store,
        make_rule(title="first", next_due_at=at(2024, 2, 1, 1)),
        make_rule(title="second", next_due_at=at(2024, 2, 1, 2)),
        make_rule(title="third", next_due_at=at(2024, 2, 1, 3)),
    )
    instance_store.fail_create_for[second.id] = PersistenceError("create_instance", "disk full")

    report = await coordinator.run(at(2024, 2, 1, 12))

    assert report.created_count == 2
    assert [i.title for i in report.created] == ["first", "third"]
    assert len(report.errors) == 1
    assert report.errors[0].rule_id == second.id
    assert report.errors[0].code == "PERSISTENCE_ERROR"
    assert first.next_due_at == at(2024, 2, 2, 1)
    assert third.next_due_at == at(2024, 2, 2, 3)
    # Not advanced, so the next batch retries it
    assert second.next_due_at == at(2024, 2, 1, 2)
    assert second.last_generated_at is None


async def test_unexpected_exception_is_captured_per_rule(
    coordinator, rule_store, instance_store, make_rule
):
    bad, good = add_rules(
        rule_store,
        make_rule(next_due_at=at(2024, 2, 1, 1)),
        make_rule(next_due_at=at(2024, 2, 1, 2)),
    )
    instance_store.fail_create_for[bad.id] = RuntimeError("boom")

    report = await coordinator.run(at(2024, 2, 1, 12))

    assert [e.code for e in report.errors] == ["UNEXPECTED_ERROR"]
    assert report.created_count == 1


async def test_invalid_rule_is_reported_without_generating(
    coordinator, rule_store, instance_store, make_rule
):
    (rule,) = add_rules(rule_store, make_rule(frequency="hourly", next_due_at=at(2024, 2, 1)))

    report = await coordinator.run(at(2024, 2, 1, 12))

    assert report.errors[0].code == "RULE_INVALID"
    assert instance_store.instances == {}
    assert rule.next_due_at == at(2024, 2, 1)


async def test_failed_save_restores_rule_and_next_run_skips_instance(
    coordinator, rule_store, instance_store, make_rule
):
    (rule,) = add_rules(rule_store, make_rule(frequency="daily", next_due_at=at(2024, 2, 1)))
    rule_store.fail_save_for.add(rule.id)

    report = await coordinator.run(at(2024, 2, 1, 12))

    assert report.errors[0].code == "PERSISTENCE_ERROR"
    assert rule.next_due_at == at(2024, 2, 1)
    assert rule.last_generated_at is None
    assert len(instance_store.instances) == 1

    rule_store.fail_save_for.clear()
    retry = await coordinator.run(at(2024, 2, 1, 13))

    assert retry.errors == []
    assert retry.skipped_count == 1
    assert len(instance_store.instances) == 1
    assert rule.next_due_at == at(2024, 2, 2)


class TestTermination:
    async def test_rule_past_end_date_deactivates_without_instance(
        self, coordinator, rule_store, instance_store, make_rule
    ):
        (rule,) = add_rules(
            rule_store,
            make_rule(end_date=date(2024, 3, 1), next_due_at=at(2024, 3, 15)),
        )

        report = await coordinator.run(at(2024, 3, 15))

        assert rule.is_active is False
        assert report.created_count == 0
        assert report.errors == []
        assert report.deactivated_count == 1
        assert instance_store.instances == {}

        again = await coordinator.run(at(2024, 3, 20))
        assert again.outcomes == []

    async def test_end_date_is_inclusive(self, coordinator, rule_store, instance_store, make_rule):
        (rule,) = add_rules(
            rule_store,
            make_rule(
                frequency="monthly",
                end_date=date(2024, 3, 1),
                next_due_at=at(2024, 3, 1),
            ),
        )

        report = await coordinator.run(at(2024, 3, 1, 12))

        assert report.created_count == 1
        assert rule.is_active is True
        assert rule.next_due_at == at(2024, 4, 1)

        later = await coordinator.run(at(2024, 4, 1, 12))
        assert later.created_count == 0
        assert later.deactivated_count == 1
        assert rule.is_active is False

    async def test_trigger_past_end_date_deactivates(
        self, coordinator, rule_store, instance_store, make_rule
    ):
        (rule,) = add_rules(
            rule_store,
            make_rule(end_date=date(2024, 3, 10), next_due_at=at(2024, 3, 12)),
        )

        outcome = await coordinator.trigger_rule(rule.id, at(2024, 3, 1))

        assert outcome.kind is OutcomeKind.DEACTIVATED
        assert rule.is_active is False
        assert instance_store.instances == {}


async def test_inactive_and_future_rules_are_ignored(coordinator, rule_store, make_rule):
    add_rules(
        rule_store,
        make_rule(is_active=False, next_due_at=at(2024, 1, 1)),
        make_rule(next_due_at=at(2024, 3, 1)),
    )

    report = await coordinator.run(at(2024, 2, 1))

    assert report.outcomes == []
    assert report.ready_for_generation_count == 0


async def test_ready_count_and_owner_filter(coordinator, rule_store, make_rule):
    mine, _ = add_rules(
        rule_store,
        make_rule(next_due_at=at(2024, 2, 1)),
        make_rule(next_due_at=at(2024, 2, 1)),
    )

    report = await coordinator.run(at(2024, 2, 1, 12), owner_id=mine.owner_id)

    assert report.ready_for_generation_count == 1
    assert [i.owner_id for i in report.created] == [mine.owner_id]


INVOICE_TEMPLATE = {
    "total": "1500.00",
    "currency": "EUR",
    "payment_terms_days": 14,
    "recipient_email": "ap@client.example",
    "invoice_prefix": "ACME",
}


class TestInvoiceRules:
    def invoice_rule(self, make_rule, **overrides):
        values = {
            "target_type": "invoice",
            "owner_type": "client",
            "frequency": "monthly",
            "next_due_at": at(2024, 2, 1),
            "extra_data": dict(INVOICE_TEMPLATE),
        }
        values.update(overrides)
        return make_rule(**values)

    async def test_occurrence_creates_linked_draft_invoice(
        self, coordinator, rule_store, instance_store, make_rule
    ):
        (rule,) = add_rules(rule_store, self.invoice_rule(make_rule))

        report = await coordinator.run(at(2024, 2, 1, 9))

        assert report.created[0].status == "draft"
        assert report.created[0].target_type == "invoice"
        (invoice,) = instance_store.invoices
        assert invoice.recurrence_rule_id == rule.id
        assert invoice.client_id == rule.owner_id
        assert invoice.status == "draft"
        assert invoice.issue_date == date(2024, 2, 1)
        assert invoice.due_date == date(2024, 2, 15)
        assert invoice.total == Decimal("1500.00")
        assert invoice.currency == "EUR"
        assert invoice.recipient_email == "ap@client.example"
        assert invoice.invoice_number == f"ACME-2024-{rule.id.hex[:8].upper()}-0201"
        assert report.outcomes[0].invoice is invoice

    async def test_template_defaults(self, coordinator, rule_store, instance_store, make_rule):
        add_rules(rule_store, self.invoice_rule(make_rule, extra_data={}))

        await coordinator.run(at(2024, 2, 1))

        (invoice,) = instance_store.invoices
        assert invoice.invoice_number.startswith("INV-2024-")
        assert invoice.due_date == date(2024, 3, 2)
        assert invoice.total == Decimal("0")
        assert invoice.currency == "USD"

    async def test_each_occurrence_gets_its_own_number(
        self, coordinator, rule_store, instance_store, make_rule
    ):
        add_rules(rule_store, self.invoice_rule(make_rule))

        await coordinator.run(at(2024, 3, 5))
        await coordinator.run(at(2024, 3, 5))

        numbers = [invoice.invoice_number for invoice in instance_store.invoices]
        assert len(numbers) == 2
        assert len(set(numbers)) == 2

    async def test_already_generated_occurrence_creates_no_invoice(
        self, coordinator, rule_store, instance_store, make_rule
    ):
        (rule,) = add_rules(rule_store, self.invoice_rule(make_rule))
        instance_store.add_existing(rule.id, date(2024, 2, 1), hidden=True)

        report = await coordinator.run(at(2024, 2, 1))

        assert report.outcomes[0].kind is OutcomeKind.ALREADY_GENERATED
        assert report.outcomes[0].invoice is None
        assert instance_store.invoices == []

    async def test_task_rules_create_no_invoice(self, coordinator, rule_store, instance_store, make_rule):
        add_rules(rule_store, make_rule(next_due_at=at(2024, 2, 1)))

        await coordinator.run(at(2024, 2, 1))

        assert instance_store.invoices == []

    async def test_malformed_template_is_a_rule_error(
        self, coordinator, rule_store, instance_store, make_rule
    ):
        (rule,) = add_rules(
            rule_store, self.invoice_rule(make_rule, extra_data={"total": "twelve hundred"})
        )

        report = await coordinator.run(at(2024, 2, 1))

        assert [e.code for e in report.errors] == ["RULE_INVALID"]
        assert instance_store.instances == {}
        assert rule.next_due_at == at(2024, 2, 1)


async def test_unreachable_store_propagates(coordinator, rule_store):
    rule_store.fail_fetch = StoreUnavailableError("connection refused")

    with pytest.raises(StoreUnavailableError):
        await coordinator.run(at(2024, 2, 1))


async def test_status_reports_pending_and_recent(coordinator, rule_store, make_rule):
    add_rules(
        rule_store,
        make_rule(next_due_at=at(2024, 2, 1)),
        make_rule(next_due_at=at(2024, 2, 5)),
    )
    await coordinator.run(at(2024, 2, 1))

    status = await coordinator.status(at(2024, 2, 5))

    assert status.ready_for_generation_count == 2
    assert len(status.recent_generations) == 1


class TestTrigger:
    async def test_generates_rule_before_it_is_due(self, coordinator, rule_store, make_rule):
        (rule,) = add_rules(rule_store, make_rule(next_due_at=at(2024, 5, 1)))

        outcome = await coordinator.trigger_rule(rule.id, at(2024, 2, 1))

        assert outcome.kind is OutcomeKind.CREATED
        assert outcome.due_date == date(2024, 5, 1)
        assert rule.next_due_at == at(2024, 5, 2)

    async def test_unknown_rule(self, coordinator):
        from uuid import uuid4

        with pytest.raises(RuleNotFoundError):
            await coordinator.trigger_rule(uuid4(), at(2024, 2, 1))

    async def test_inactive_rule(self, coordinator, rule_store, make_rule):
        (rule,) = add_rules(rule_store, make_rule(is_active=False))

        with pytest.raises(RecurrenceValidationError):
            await coordinator.trigger_rule(rule.id, at(2024, 2, 1))

"""Prometheus counters for the generation and reminder jobs."""

from prometheus_client import Counter


instances_generated_total = Counter(
    "bizdesk_instances_generated_total",
    "Total instances materialized from recurrence rules",
    ["target_type"],
)

generation_skipped_total = Counter(
    "bizdesk_generation_skipped_total",
    "Occurrences skipped because an instance already existed",
)

rules_deactivated_total = Counter(
    "bizdesk_rules_deactivated_total",
    "Total rules deactivated after passing their end date",
)

rule_errors_total = Counter(
    "bizdesk_rule_errors_total",
    "Total per-rule generation failures",
    ["code"],
)

generation_batches_total = Counter(
    "bizdesk_generation_batches_total",
    "Total generation batch runs",
)

reminders_sent_total = Counter(
    "bizdesk_reminders_sent_total",
    "Total invoice reminders sent",
    ["reminder_type"],
)

reminders_failed_total = Counter(
    "bizdesk_reminders_failed_total",
    "Total invoice reminders that failed to send",
    ["code"],
)

"""Prometheus metrics for the application"""
from prometheus_client import Counter, Histogram, REGISTRY

# Webhook intake metrics
try:
    webhook_events_counter = Counter(
        'creatorpay_webhook_events_total',
        'Total number of provider webhook events by outcome',
        ['provider', 'event_type', 'outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('creatorpay_webhook_events_total')

try:
    webhook_processing_seconds = Histogram(
        'creatorpay_webhook_processing_seconds',
        'Time spent running webhook handlers',
        ['provider']
    )
except ValueError:
    webhook_processing_seconds = REGISTRY._names_to_collectors.get('creatorpay_webhook_processing_seconds')

# Locking metrics
try:
    lock_contention_counter = Counter(
        'creatorpay_lock_contention_total',
        'Number of times a distributed lock was already held',
        ['scope']
    )
except ValueError:
    lock_contention_counter = REGISTRY._names_to_collectors.get('creatorpay_lock_contention_total')

# Reconciliation metrics
try:
    payout_mismatch_counter = Counter(
        'creatorpay_payout_mismatch_total',
        'Payout webhooks whose amount or currency disagreed with the stored record',
        ['provider']
    )
except ValueError:
    payout_mismatch_counter = REGISTRY._names_to_collectors.get('creatorpay_payout_mismatch_total')

try:
    fee_mismatch_counter = Counter(
        'creatorpay_fee_mismatch_total',
        'Renewals where the provider-assessed fee differed from the expected fee'
    )
except ValueError:
    fee_mismatch_counter = REGISTRY._names_to_collectors.get('creatorpay_fee_mismatch_total')

try:
    debit_recovery_counter = Counter(
        'creatorpay_debit_recovery_total',
        'Platform debit recovery attempts',
        ['provider', 'outcome']
    )
except ValueError:
    debit_recovery_counter = REGISTRY._names_to_collectors.get('creatorpay_debit_recovery_total')

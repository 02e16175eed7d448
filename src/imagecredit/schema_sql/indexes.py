"""All CREATE INDEX statements for the initial schema."""

ALL = [
    # users
    "CREATE INDEX idx_users_stripe_customer ON users(stripe_customer_id) "
    "WHERE stripe_customer_id IS NOT NULL;",
    # credit_transactions
    "CREATE INDEX idx_credit_txn_user ON credit_transactions(user_id, txn_id DESC);",
    "CREATE INDEX idx_credit_txn_reference ON credit_transactions(reference) "
    "WHERE reference IS NOT NULL;",
    # payment_records
    "CREATE INDEX idx_payments_user ON payment_records(user_id, completed_at DESC) "
    "WHERE status = 'completed';",
    "CREATE INDEX idx_payments_pending ON payment_records(reserved_at) "
    "WHERE status = 'pending';",
    # generations
    "CREATE INDEX idx_generations_user ON generations(user_id, created_at DESC);",
]

"""CREATE TABLE statements for users and the credit ledger."""

USERS = """
CREATE TABLE users (
    user_id         UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    wallet_address  VARCHAR(64)  UNIQUE,
    email           VARCHAR(320) UNIQUE,
    password_hash   VARCHAR(255),
    stripe_customer_id VARCHAR(255) UNIQUE,
    token_version   INTEGER NOT NULL DEFAULT 0,
    credit_balance  INTEGER NOT NULL DEFAULT 0,
    total_credits_earned INTEGER NOT NULL DEFAULT 0,
    total_credits_spent  INTEGER NOT NULL DEFAULT 0,
    nft_collections JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    is_active       BOOLEAN NOT NULL DEFAULT TRUE,
    CONSTRAINT ck_users_balance_non_negative CHECK (credit_balance >= 0),
    CONSTRAINT ck_users_balance_matches_totals
        CHECK (credit_balance = total_credits_earned - total_credits_spent),
    CONSTRAINT ck_users_has_identity
        CHECK (wallet_address IS NOT NULL OR email IS NOT NULL)
);
"""

CREDIT_TRANSACTIONS = """
CREATE TABLE credit_transactions (
    txn_id        BIGSERIAL PRIMARY KEY,
    user_id       UUID NOT NULL REFERENCES users(user_id),
    amount        INTEGER NOT NULL,
    txn_type      VARCHAR(30) NOT NULL
                  CONSTRAINT ck_credit_txn_type
                  CHECK (txn_type IN (
                      'crypto_payment','stripe_payment','subscription',
                      'nft_bonus','spend','refund','admin_adjustment'
                  )),
    reference     VARCHAR(160),
    balance_after INTEGER NOT NULL,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ALL = [
    USERS,
    CREDIT_TRANSACTIONS,
]

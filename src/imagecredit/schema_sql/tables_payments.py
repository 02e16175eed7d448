"""CREATE TABLE statements for payment records and generation history."""

PAYMENT_RECORDS = """
CREATE TABLE payment_records (
    payment_id    UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    tx_key        VARCHAR(160) NOT NULL,
    source        VARCHAR(20)  NOT NULL
                  CONSTRAINT ck_payment_source
                  CHECK (source IN ('crypto','stripe','nft_bonus')),
    chain         VARCHAR(20),
    tx_id         VARCHAR(128),
    payer         VARCHAR(320),
    amount        NUMERIC(20, 6),
    credits       INTEGER,
    user_id       UUID REFERENCES users(user_id),
    status        VARCHAR(20) NOT NULL
                  CONSTRAINT ck_payment_status
                  CHECK (status IN ('pending','completed')),
    reserved_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
    completed_at  TIMESTAMPTZ,
    CONSTRAINT uq_payment_records_tx_key UNIQUE (tx_key),
    CONSTRAINT ck_payment_completed_has_user
        CHECK (status = 'pending' OR (user_id IS NOT NULL AND credits IS NOT NULL))
);
"""

GENERATIONS = """
CREATE TABLE generations (
    generation_id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id       UUID NOT NULL REFERENCES users(user_id),
    prompt        TEXT NOT NULL,
    model         VARCHAR(40) NOT NULL,
    credit_cost   INTEGER NOT NULL,
    image_url     TEXT,
    status        VARCHAR(20) NOT NULL
                  CONSTRAINT ck_generation_status
                  CHECK (status IN ('completed','failed')),
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ALL = [
    PAYMENT_RECORDS,
    GENERATIONS,
]
